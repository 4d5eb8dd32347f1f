# autotrader/strategies/__init__.py - Trading strategies module
"""
Trading strategies.

Available strategies:
- MovingAverageCrossover: Double MA strategy
- TrailingStop: Fixed-amount entry with a trailing stop exit
- GrowthBreakout: Pump detection on consecutive price growth
- TrendDiscovery: Long or short entries on sustained candle trends
"""

from autotrader.strategies.base import Strategy
from autotrader.strategies.moving_average import MovingAverageCrossover
from autotrader.strategies.trailing_stop import TrailingStop, TrailingStopLevel
from autotrader.strategies.growth_breakout import GrowthBreakout
from autotrader.strategies.trend_discovery import TrendDiscovery

__all__ = [
    "Strategy",
    "MovingAverageCrossover",
    "TrailingStop",
    "TrailingStopLevel",
    "GrowthBreakout",
    "TrendDiscovery",
    "STRATEGY_REGISTRY",
]

# Strategy registry for loading by name
STRATEGY_REGISTRY = {
    "moving_average": MovingAverageCrossover,
    "trailing_stop": TrailingStop,
    "growth_breakout": GrowthBreakout,
    "trend_discovery": TrendDiscovery,
}

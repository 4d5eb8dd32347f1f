# autotrader/data_sources/__init__.py - Market data sources and event bus
from autotrader.data_sources.base import HistoricalDataSource, LiveFeedSource
from autotrader.data_sources.historical import (
    InMemoryHistoricalSource,
    DataFrameHistoricalSource,
    CsvHistoricalSource,
)
from autotrader.data_sources.live import QueueFeedSource
from autotrader.data_sources.event_bus import (
    MarketEventBus,
    ReplayEventBus,
    LiveEventBus,
    PacingMode,
    Subscription,
)

__all__ = [
    'HistoricalDataSource',
    'LiveFeedSource',
    'InMemoryHistoricalSource',
    'DataFrameHistoricalSource',
    'CsvHistoricalSource',
    'QueueFeedSource',
    'MarketEventBus',
    'ReplayEventBus',
    'LiveEventBus',
    'PacingMode',
    'Subscription',
]

# autotrader/__init__.py
"""
Strategy execution and order lifecycle engine.

One process runs the same strategy code against historical replays
(backtest) or live feeds, turning market events into risk-checked orders
and tracking their effect on account state.
"""

__version__ = "0.1.0"

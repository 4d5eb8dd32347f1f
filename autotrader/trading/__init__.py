# autotrader/trading/__init__.py
from autotrader.trading.clock import EngineClock
from autotrader.trading.execution_backend import (
    CancelAck, ExecutionBackend, ExecutionReport, ReportKind, SubmitAck,
)
from autotrader.trading.ledger import Ledger
from autotrader.trading.order_manager import ALLOWED_TRANSITIONS, OrderManager
from autotrader.trading.paper_backend import PaperBrokerBackend
from autotrader.trading.runtime import StrategyRuntime
from autotrader.trading.engine import TradingEngine

__all__ = [
    'EngineClock',
    'CancelAck',
    'ExecutionBackend',
    'ExecutionReport',
    'ReportKind',
    'SubmitAck',
    'Ledger',
    'ALLOWED_TRANSITIONS',
    'OrderManager',
    'PaperBrokerBackend',
    'StrategyRuntime',
    'TradingEngine',
]

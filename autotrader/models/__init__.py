# autotrader/models/__init__.py - Data models module
from .base import Base
from .trading import (
    EventKind,
    OrderSide,
    OrderType,
    OrderState,
    TERMINAL_STATES,
    MarketEvent,
    TradeIntent,
    Order,
    Position,
    Account,
    AccountSnapshot,
    RiskLimits,
)
from .records import OrderRecord, LedgerSnapshotRecord

__all__ = [
    "Base",
    "EventKind",
    "OrderSide",
    "OrderType",
    "OrderState",
    "TERMINAL_STATES",
    "MarketEvent",
    "TradeIntent",
    "Order",
    "Position",
    "Account",
    "AccountSnapshot",
    "RiskLimits",
    "OrderRecord",
    "LedgerSnapshotRecord",
]

# autotrader/models/trading.py - Core trading domain types
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional

EPSILON = 1e-9


class EventKind(Enum):
    """Market event kinds."""
    TRADE = "trade"
    QUOTE = "quote"


class OrderSide(Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"

    @property
    def sign(self) -> int:
        return 1 if self is OrderSide.BUY else -1


class OrderType(Enum):
    """Order / intent type."""
    MARKET = "market"
    LIMIT = "limit"


class TrendDirection(Enum):
    """Side of the market a strategy trades: long on rises or short on falls."""
    POSITIVE = "positive"
    NEGATIVE = "negative"

    @property
    def sign(self) -> int:
        return 1 if self is TrendDirection.POSITIVE else -1

    @classmethod
    def parse(cls, value) -> 'TrendDirection':
        """Accept an enum member or a name such as ``positive``, ``long``, ``short``."""
        if isinstance(value, cls):
            return value
        aliases = {'long': cls.POSITIVE, 'short': cls.NEGATIVE}
        text = str(value).strip().lower()
        if text in aliases:
            return aliases[text]
        return cls(text)


class OrderState(Enum):
    """Order state machine states.

    Order flow:
    PENDING → SUBMITTED → PARTIALLY_FILLED → FILLED
        ↓          ↓              ↓
    REJECTED   CANCELLED      CANCELLED
    """
    PENDING = "pending"
    SUBMITTED = "submitted"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({OrderState.FILLED, OrderState.CANCELLED, OrderState.REJECTED})


@dataclass(frozen=True)
class MarketEvent:
    """Normalized price/trade tick.

    ``sequence`` is assigned by the event bus on arrival and breaks timestamp
    ties. ``out_of_order`` is set by the bus when the event arrived after a
    later timestamp had already been released.
    """
    symbol: str
    timestamp: datetime
    price: float
    volume: float = 0.0
    kind: EventKind = EventKind.TRADE
    sequence: int = -1
    out_of_order: bool = False

    @property
    def sort_key(self):
        return (self.timestamp, self.sequence)


@dataclass(frozen=True)
class TradeIntent:
    """A strategy's request to trade, prior to risk approval."""
    strategy_id: str
    symbol: str
    side: OrderSide
    quantity: float
    timestamp: datetime
    kind: OrderType = OrderType.MARKET
    limit_price: Optional[float] = None
    reference_price: Optional[float] = None
    reason: str = ""

    @property
    def signed_quantity(self) -> float:
        return self.side.sign * self.quantity

    def to_dict(self) -> Dict:
        return {
            'strategy_id': self.strategy_id,
            'symbol': self.symbol,
            'side': self.side.value,
            'quantity': self.quantity,
            'timestamp': self.timestamp.isoformat(),
            'kind': self.kind.value,
            'limit_price': self.limit_price,
            'reference_price': self.reference_price,
            'reason': self.reason,
        }


@dataclass
class Order:
    """Order owned by the order manager until it reaches a terminal state.

    Once terminal the order is sealed and further attribute assignment raises.
    """
    order_id: int
    intent: TradeIntent
    quantity: float
    state: OrderState = OrderState.PENDING
    filled_quantity: float = 0.0
    avg_fill_price: Optional[float] = None
    created_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    first_fill_at: Optional[datetime] = None
    terminal_at: Optional[datetime] = None
    terminal_reason: Optional[str] = None
    broker_order_id: Optional[str] = None
    _sealed: bool = field(default=False, repr=False, compare=False)

    def __setattr__(self, name, value):
        if self.__dict__.get('_sealed'):
            raise AttributeError(f"Order {self.order_id} is terminal and cannot be modified")
        super().__setattr__(name, value)

    def seal(self) -> None:
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def symbol(self) -> str:
        return self.intent.symbol

    @property
    def side(self) -> OrderSide:
        return self.intent.side

    @property
    def order_type(self) -> OrderType:
        return self.intent.kind

    @property
    def limit_price(self) -> Optional[float]:
        return self.intent.limit_price

    @property
    def strategy_id(self) -> str:
        return self.intent.strategy_id

    @property
    def remaining_quantity(self) -> float:
        return self.quantity - self.filled_quantity

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> Dict:
        return {
            'order_id': self.order_id,
            'intent': self.intent.to_dict(),
            'quantity': self.quantity,
            'state': self.state.value,
            'filled_quantity': self.filled_quantity,
            'avg_fill_price': self.avg_fill_price,
            'created_at': _iso(self.created_at),
            'submitted_at': _iso(self.submitted_at),
            'first_fill_at': _iso(self.first_fill_at),
            'terminal_at': _iso(self.terminal_at),
            'terminal_reason': self.terminal_reason,
        }


@dataclass
class Position:
    """Open position in one symbol."""
    symbol: str
    quantity: float = 0.0
    avg_entry_price: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    last_price: Optional[float] = None

    @property
    def market_price(self) -> float:
        return self.last_price if self.last_price is not None else self.avg_entry_price

    @property
    def market_value(self) -> float:
        return self.quantity * self.market_price

    @property
    def exposure(self) -> float:
        return abs(self.market_value)

    @property
    def unrealized_pnl_pct(self) -> float:
        cost = abs(self.quantity) * self.avg_entry_price
        if cost <= EPSILON:
            return 0.0
        return self.unrealized_pnl / cost

    def revalue(self, price: float) -> None:
        """Recompute unrealized PnL at a new mark price."""
        self.last_price = price
        self.unrealized_pnl = (price - self.avg_entry_price) * self.quantity

    def copy(self) -> 'Position':
        return Position(**{f.name: getattr(self, f.name) for f in fields(self)})

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'quantity': self.quantity,
            'avg_entry_price': self.avg_entry_price,
            'realized_pnl': self.realized_pnl,
            'unrealized_pnl': self.unrealized_pnl,
            'last_price': self.last_price,
        }


@dataclass
class Account:
    """Cash and positions for one engine instance."""
    cash: float
    positions: Dict[str, Position] = field(default_factory=dict)
    realized_pnl: float = 0.0
    account_id: str = "default"

    @property
    def equity(self) -> float:
        return self.cash + sum(p.market_value for p in self.positions.values())


@dataclass(frozen=True)
class AccountSnapshot:
    """Read-only view of the ledger at a point in time."""
    cash: float
    positions: Mapping[str, Position]
    realized_pnl: float
    as_of: Optional[datetime] = None
    account_id: str = "default"
    version: int = 0
    prices: Mapping[str, float] = field(default_factory=dict)

    @property
    def equity(self) -> float:
        return self.cash + sum(p.market_value for p in self.positions.values())

    @property
    def unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self.positions.values())

    @property
    def gross_exposure(self) -> float:
        return sum(p.exposure for p in self.positions.values())

    def position(self, symbol: str) -> Optional[Position]:
        return self.positions.get(symbol)

    def price_of(self, symbol: str) -> Optional[float]:
        if symbol in self.prices:
            return self.prices[symbol]
        position = self.positions.get(symbol)
        return position.last_price if position else None

    def to_dict(self) -> Dict:
        return {
            'account_id': self.account_id,
            'version': self.version,
            'as_of': _iso(self.as_of),
            'cash': self.cash,
            'realized_pnl': self.realized_pnl,
            'unrealized_pnl': self.unrealized_pnl,
            'equity': self.equity,
            'positions': {s: p.to_dict() for s, p in sorted(self.positions.items())},
        }

    @classmethod
    def of(cls, account: Account, as_of: Optional[datetime] = None, version: int = 0,
           prices: Optional[Mapping[str, float]] = None) -> 'AccountSnapshot':
        positions = {s: p.copy() for s, p in account.positions.items()}
        return cls(
            cash=account.cash,
            positions=MappingProxyType(positions),
            realized_pnl=account.realized_pnl,
            as_of=as_of,
            account_id=account.account_id,
            version=version,
            prices=MappingProxyType(dict(prices or {})),
        )


@dataclass(frozen=True)
class RiskLimits:
    """Risk configuration, read-only during a run."""
    max_position_size: float = float('inf')
    max_exposure: float = float('inf')
    stop_loss_pct: float = 0.05
    max_order_rate: int = 10
    order_rate_window: float = 1.0  # seconds
    quantity_step: Optional[float] = None
    max_open_positions: Optional[int] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None

# autotrader/backtest/simulated_backend.py - Simulated execution for backtests
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from autotrader.models.trading import EPSILON, MarketEvent, Order, OrderSide, OrderType
from autotrader.trading.execution_backend import (
    CancelAck, ExecutionBackend, ExecutionReport, ReportKind, SubmitAck,
)

logger = logging.getLogger(__name__)


@dataclass
class FillModel:
    """Execution price and size model.

    - Market orders fill at the next event price for their symbol, moved
      ``slippage_bps`` against the taker (buys pay more, sells receive less).
    - Limit orders fill once an event price crosses the limit, at the better of
      event price and limit, without slippage.
    - With ``liquidity_fraction`` set, a fill takes at most that share of the
      event volume; events without volume are not capped.
    - Commission is ``commission_bps`` of fill notional.
    """
    slippage_bps: float = 5.0
    commission_bps: float = 0.0
    liquidity_fraction: Optional[float] = None

    def market_price(self, side: OrderSide, price: float) -> float:
        return price * (1 + side.sign * self.slippage_bps / 10000.0)

    def limit_price(self, side: OrderSide, price: float, limit: float) -> Optional[float]:
        if side is OrderSide.BUY:
            return min(price, limit) if price <= limit else None
        return max(price, limit) if price >= limit else None

    def fill_quantity(self, remaining: float, volume: float) -> float:
        if self.liquidity_fraction is None or volume <= 0:
            return remaining
        return min(remaining, volume * self.liquidity_fraction)

    def commission(self, quantity: float, price: float) -> float:
        return quantity * price * self.commission_bps / 10000.0


class SimulatedExecutionBackend(ExecutionBackend):
    """Matches resting orders against replayed market events.

    Orders accepted while event N is being processed are matched from event
    N+1 onward, so a strategy never trades on the price that triggered it.
    Limit orders expire after ``limit_order_expiry`` seconds of event time and
    are cancelled with reason ``expired``.
    """

    def __init__(self, fill_model: Optional[FillModel] = None, limit_order_expiry: float = 900.0,
                 reject_insufficient_funds: bool = False,
                 cash_provider: Optional[Callable[[], float]] = None):
        super().__init__()
        self.fill_model = fill_model or FillModel()
        self.limit_order_expiry = limit_order_expiry
        self.reject_insufficient_funds = reject_insufficient_funds
        self.cash_provider = cash_provider
        self.resting: Dict[int, Order] = {}
        self.last_prices: Dict[str, float] = {}
        self.now: Optional[datetime] = None  # last event time
        self.stats = {'submitted': 0, 'rejected': 0, 'fills': 0, 'expired': 0}

    @classmethod
    def from_settings(cls, settings, cash_provider: Optional[Callable[[], float]] = None):
        return cls(
            FillModel(
                slippage_bps=settings.SLIPPAGE_BPS,
                commission_bps=settings.COMMISSION_BPS,
                liquidity_fraction=settings.LIQUIDITY_FRACTION,
            ),
            limit_order_expiry=settings.LIMIT_ORDER_EXPIRY,
            reject_insufficient_funds=settings.REJECT_INSUFFICIENT_FUNDS,
            cash_provider=cash_provider,
        )

    @property
    def open_order_count(self) -> int:
        return len(self.resting)

    async def submit(self, order: Order) -> SubmitAck:
        if self.reject_insufficient_funds and order.side is OrderSide.BUY:
            reason = self._funds_check(order)
            if reason:
                self.stats['rejected'] += 1
                logger.warning(f"Simulated rejection of order {order.order_id}: {reason}")
                return SubmitAck(order.order_id, False, reason=reason)

        self.resting[order.order_id] = order
        self.stats['submitted'] += 1
        return SubmitAck(order.order_id, True, broker_order_id=f"SIM_{order.order_id:06d}")

    def _funds_check(self, order: Order) -> Optional[str]:
        if self.cash_provider is None:
            return None
        price = order.limit_price or self.last_prices.get(order.symbol) or order.intent.reference_price
        if price is None:
            return None
        if order.order_type is OrderType.MARKET:
            price = self.fill_model.market_price(order.side, price)
        cost = order.quantity * price + self.fill_model.commission(order.quantity, price)
        committed = sum(
            o.remaining_quantity * (o.limit_price or self.last_prices.get(o.symbol, 0.0))
            for o in self.resting.values() if o.side is OrderSide.BUY
        )
        available = self.cash_provider() - committed
        if cost > available + EPSILON:
            return f"insufficient_funds: need {cost:.2f}, available {available:.2f}"
        return None

    async def cancel(self, order_id: int) -> CancelAck:
        order = self.resting.pop(order_id, None)
        if order is None:
            return CancelAck(order_id, False, reason="unknown_order")
        await self._emit(ExecutionReport(
            order_id, ReportKind.CANCEL, self._now(order), reason="cancel_requested"))
        return CancelAck(order_id, True)

    async def on_market_event(self, event: MarketEvent) -> None:
        self.last_prices[event.symbol] = event.price
        self.now = event.timestamp
        reports: List[ExecutionReport] = []

        for order in list(self.resting.values()):
            if self._expired(order, event.timestamp):
                del self.resting[order.order_id]
                self.stats['expired'] += 1
                reports.append(ExecutionReport(
                    order.order_id, ReportKind.CANCEL, event.timestamp, reason="expired"))
                continue
            if order.symbol != event.symbol:
                continue
            report = self._match(order, event)
            if report is not None:
                reports.append(report)

        for report in reports:
            await self._emit(report)

    def _expired(self, order: Order, now: datetime) -> bool:
        if order.order_type is not OrderType.LIMIT or order.submitted_at is None:
            return False
        return (now - order.submitted_at).total_seconds() >= self.limit_order_expiry

    def _match(self, order: Order, event: MarketEvent) -> Optional[ExecutionReport]:
        model = self.fill_model
        if order.order_type is OrderType.LIMIT:
            price = model.limit_price(order.side, event.price, order.limit_price)
            if price is None:
                return None
        else:
            price = model.market_price(order.side, event.price)

        # Remaining as of this event, reports are applied after matching
        remaining = order.remaining_quantity
        quantity = model.fill_quantity(remaining, event.volume)
        if quantity <= EPSILON:
            return None
        if remaining - quantity <= EPSILON:
            quantity = remaining
            del self.resting[order.order_id]

        self.stats['fills'] += 1
        return ExecutionReport(
            order.order_id, ReportKind.FILL, event.timestamp,
            quantity=quantity, price=price, commission=model.commission(quantity, price),
        )

    async def flush(self, timestamp: datetime, reason: str = "end_of_data") -> None:
        """Cancel every resting order."""
        if self.resting:
            logger.info(f"Cancelling {len(self.resting)} resting orders: {reason}")
        for order_id in list(self.resting):
            del self.resting[order_id]
            await self._emit(ExecutionReport(order_id, ReportKind.CANCEL, timestamp, reason=reason))

    def _now(self, order: Order) -> datetime:
        return self.now or order.submitted_at or order.created_at

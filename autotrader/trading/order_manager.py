# autotrader/trading/order_manager.py - Order lifecycle management
import asyncio
import itertools
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from autotrader.models.trading import EPSILON, Order, OrderState, TradeIntent
from autotrader.trading.execution_backend import ExecutionBackend, ExecutionReport, ReportKind
from autotrader.trading.ledger import Ledger
from autotrader.utils.exceptions import ExecutionFault, LedgerInvariantViolation
from autotrader.utils.timestamps import utc_now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    OrderState.PENDING: {OrderState.SUBMITTED, OrderState.CANCELLED, OrderState.REJECTED},
    OrderState.SUBMITTED: {
        OrderState.PARTIALLY_FILLED, OrderState.FILLED, OrderState.CANCELLED, OrderState.REJECTED,
    },
    OrderState.PARTIALLY_FILLED: {
        OrderState.PARTIALLY_FILLED, OrderState.FILLED, OrderState.CANCELLED,
    },
}

Clock = Callable[[], datetime]
OrderListener = Callable[[Order], None]
StrategyNotifier = Callable[[Order], Awaitable[None]]
FaultHandler = Callable[[Exception], None]


class OrderManager:
    """Manages order lifecycle with state machine.

    Order flow:
    PENDING → SUBMITTED → PARTIALLY_FILLED → FILLED
        ↓          ↓              ↓
    REJECTED   CANCELLED      CANCELLED

    Responsibilities:
    - Order creation from approved intents
    - Submission to the execution backend
    - State tracking from execution reports
    - Fill application to the ledger
    - Archiving and broadcasting terminal orders
    """

    def __init__(self, backend: ExecutionBackend, ledger: Ledger, clock: Clock = utc_now,
                 fault_handler: Optional[FaultHandler] = None):
        self.backend = backend
        self.ledger = ledger
        self.clock = clock
        self.orders: Dict[int, Order] = {}  # open orders
        self.archive: List[Order] = []
        self._ids = itertools.count(1)
        self._listeners: List[OrderListener] = []
        self._strategy_notifier: Optional[StrategyNotifier] = None
        self._fault_handler = fault_handler
        self._idle = asyncio.Event()
        self._idle.set()
        self.fatal: Optional[LedgerInvariantViolation] = None
        backend.bind(self.on_execution_report)

    def add_listener(self, listener: OrderListener) -> None:
        """Register a callback for terminal orders."""
        self._listeners.append(listener)

    def set_strategy_notifier(self, notifier: StrategyNotifier) -> None:
        self._strategy_notifier = notifier

    @property
    def open_orders(self) -> List[Order]:
        return list(self.orders.values())

    def get_order(self, order_id: int) -> Optional[Order]:
        order = self.orders.get(order_id)
        if order is not None:
            return order
        return next((o for o in self.archive if o.order_id == order_id), None)

    def working_quantities(self) -> Dict[str, float]:
        """Signed unfilled quantity of open orders per symbol."""
        working: Dict[str, float] = {}
        for order in self.orders.values():
            working[order.symbol] = working.get(order.symbol, 0.0) + order.side.sign * order.remaining_quantity
        return working

    async def submit(self, intent: TradeIntent, quantity: float) -> Order:
        """Create an order for an approved intent and hand it to the backend.

        Args:
            intent: Approved intent
            quantity: Approved quantity, at most the intent's quantity

        Returns:
            The order, Submitted if the backend accepted it, otherwise Rejected
        """
        if not 0 < quantity <= intent.quantity + EPSILON:
            raise LedgerInvariantViolation(
                f"Approved quantity {quantity} outside (0, {intent.quantity}]",
                details={'intent': intent.to_dict()},
            )

        order = Order(order_id=next(self._ids), intent=intent, quantity=quantity, created_at=self.clock())
        self.orders[order.order_id] = order
        self._idle.clear()
        logger.info(
            f"Order {order.order_id} created: {intent.side.value} {quantity} {intent.symbol} "
            f"{intent.kind.value}{f' @ {intent.limit_price}' if intent.limit_price else ''} "
            f"[{intent.strategy_id}]"
        )

        try:
            ack = await self.backend.submit(order)
        except Exception as e:
            logger.error(f"Backend error submitting order {order.order_id}: {e}", exc_info=True)
            await self._reject(order, f"submit_error: {e}")
            return order

        if order.is_terminal:
            return order
        if not ack.accepted:
            await self._reject(order, ack.reason or "rejected")
            return order

        self._transition(order, OrderState.SUBMITTED)
        order.submitted_at = self.clock()
        order.broker_order_id = ack.broker_order_id
        return order

    async def cancel(self, order_id: int, reason: str = "cancel_requested") -> bool:
        """Request cancellation of an open order.

        Returns:
            True if the backend accepted the cancel
        """
        order = self.orders.get(order_id)
        if order is None:
            logger.warning(f"Order not cancelable: {order_id} is not open")
            return False

        ack = await self.backend.cancel(order_id)
        if not ack.accepted:
            logger.warning(f"Backend refused to cancel order {order_id}: {ack.reason}")
            return False

        # Backends report the cancel; resolve locally if they did not
        if order_id in self.orders:
            await self._finish(order, OrderState.CANCELLED, self.clock(), reason)
        return True

    async def on_execution_report(self, report: ExecutionReport) -> None:
        """Apply one execution report from the backend.

        Raises:
            LedgerInvariantViolation: The report breaks order or ledger accounting.
                It is also kept on ``fatal`` for reports arriving off the engine loop.
        """
        try:
            await self._apply_report(report)
        except LedgerInvariantViolation as e:
            if self.fatal is None:
                self.fatal = e
            logger.critical(f"Ledger invariant violated: {e.message}")
            raise

    async def _apply_report(self, report: ExecutionReport) -> None:
        order = self.orders.get(report.order_id)
        if order is None:
            if report.kind is ReportKind.FILL:
                raise LedgerInvariantViolation(
                    f"Fill for order {report.order_id} that is not open",
                    details={'order_id': report.order_id, 'quantity': report.quantity},
                )
            logger.debug(f"Ignoring {report.kind.value} for resolved order {report.order_id}")
            return

        if report.kind is ReportKind.FILL:
            await self._fill(order, report)
        elif report.kind is ReportKind.CANCEL:
            await self._finish(order, OrderState.CANCELLED, report.timestamp, report.reason or "cancelled")
        elif report.kind is ReportKind.REJECT:
            if order.state is OrderState.PARTIALLY_FILLED:
                await self._cancel_remainder(order, report)
            else:
                await self._reject(order, report.reason or "rejected", report.timestamp)

    async def _fill(self, order: Order, report: ExecutionReport) -> None:
        if order.state not in (OrderState.SUBMITTED, OrderState.PARTIALLY_FILLED):
            raise LedgerInvariantViolation(
                f"Fill on order {order.order_id} in state {order.state.value}",
                details={'order_id': order.order_id},
            )

        # Ledger first, then the order's filled quantity
        await self.ledger.apply_fill(
            order, report.quantity, report.price, report.commission, report.timestamp)

        previous = order.filled_quantity
        filled = previous + report.quantity
        if abs(order.quantity - filled) <= EPSILON:
            filled = order.quantity
        order.avg_fill_price = (
            ((order.avg_fill_price or 0.0) * previous + report.price * report.quantity) / filled
        )
        order.filled_quantity = filled
        if order.first_fill_at is None:
            order.first_fill_at = report.timestamp

        if order.remaining_quantity <= EPSILON:
            logger.info(f"Order filled: {order.order_id} {filled} @ {order.avg_fill_price:.4f}")
            await self._finish(order, OrderState.FILLED, report.timestamp, "filled")
        else:
            self._transition(order, OrderState.PARTIALLY_FILLED)
            logger.info(
                f"Order partially filled: {order.order_id} {filled}/{order.quantity} "
                f"@ {order.avg_fill_price:.4f}"
            )

    async def _reject(self, order: Order, reason: str, timestamp: Optional[datetime] = None) -> None:
        fault = ExecutionFault(
            f"Order {order.order_id} rejected: {reason}",
            details={'order_id': order.order_id, 'symbol': order.symbol, 'reason': reason},
        )
        logger.error(fault.message)
        self._report(fault)
        await self._finish(order, OrderState.REJECTED, timestamp or self.clock(), reason)

    async def _cancel_remainder(self, order: Order, report: ExecutionReport) -> None:
        """Venue refused the unfilled rest of a partially filled order.

        Fills already applied stand, so the order ends Cancelled, not Rejected.
        """
        reason = f"remainder_rejected: {report.reason or 'rejected'}"
        fault = ExecutionFault(
            f"Order {order.order_id} remainder rejected after {order.filled_quantity} filled: "
            f"{report.reason or 'rejected'}",
            details={'order_id': order.order_id, 'symbol': order.symbol,
                     'filled_quantity': order.filled_quantity, 'reason': report.reason},
        )
        logger.error(fault.message)
        self._report(fault)
        await self._finish(order, OrderState.CANCELLED, report.timestamp, reason)

    def _transition(self, order: Order, state: OrderState) -> None:
        allowed = ALLOWED_TRANSITIONS.get(order.state, set())
        if state not in allowed:
            raise LedgerInvariantViolation(
                f"Illegal order transition {order.state.value} -> {state.value} "
                f"for order {order.order_id}",
                details={'order_id': order.order_id, 'from': order.state.value, 'to': state.value},
            )
        order.state = state

    async def _finish(self, order: Order, state: OrderState, timestamp: datetime, reason: str) -> None:
        self._transition(order, state)
        order.terminal_at = timestamp
        order.terminal_reason = reason
        order.seal()

        del self.orders[order.order_id]
        self.archive.append(order)
        if not self.orders:
            self._idle.set()

        if state is OrderState.CANCELLED:
            logger.info(f"Order cancelled: {order.order_id} ({reason})")

        for listener in self._listeners:
            try:
                listener(order)
            except Exception as e:
                logger.error(f"Order listener {listener!r} failed: {e}", exc_info=True)

        if self._strategy_notifier is not None:
            await self._strategy_notifier(order)

    def _report(self, fault: Exception) -> None:
        if self._fault_handler is None:
            return
        try:
            self._fault_handler(fault)
        except Exception as e:
            logger.error(f"Fault handler error: {e}", exc_info=True)

    async def drain(self, timeout: float = 30.0) -> None:
        """Wait for open orders to resolve, then cancel what is left.

        No order is left Pending or working afterwards.
        """
        if self.orders:
            logger.info(f"Draining {len(self.orders)} open orders (timeout {timeout}s)")
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Drain timeout, cancelling {len(self.orders)} open orders")

        for order_id in list(self.orders):
            if not await self.cancel(order_id, reason="drain_timeout"):
                order = self.orders.get(order_id)
                if order is not None:
                    await self._finish(order, OrderState.CANCELLED, self.clock(), "drain_timeout")

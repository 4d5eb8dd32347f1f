# autotrader/trading/paper_backend.py - Paper trading backend for live runs
import asyncio
import logging
import random
from datetime import datetime
from typing import Callable, Dict, Optional

from autotrader.models.trading import MarketEvent, Order, OrderSide, OrderType
from autotrader.trading.execution_backend import (
    CancelAck, ExecutionBackend, ExecutionReport, ReportKind, SubmitAck,
)
from autotrader.utils.exceptions import LedgerInvariantViolation
from autotrader.utils.timestamps import utc_now

logger = logging.getLogger(__name__)


class PaperBrokerBackend(ExecutionBackend):
    """Paper broker for live data without a real venue.

    Simulates:
    - Order acceptance/rejection
    - Market order fills after ``fill_delay`` at the latest quote plus slippage
    - Limit orders resting until a quote crosses them
    """

    def __init__(self, config: Dict = None, clock: Callable[[], datetime] = utc_now):
        super().__init__()
        self.config = config or {}
        self.clock = clock
        self.fill_delay = self.config.get('fill_delay', 0.1)  # seconds
        self.rejection_rate = self.config.get('rejection_rate', 0.0)  # 0-1
        self.slippage_bps = self.config.get('slippage_bps', 5.0)
        self.commission_bps = self.config.get('commission_bps', 0.0)
        self._random = random.Random(self.config.get('seed'))

        self.orders: Dict[int, Order] = {}  # open orders
        self._tasks: Dict[int, asyncio.Task] = {}
        self._market_prices: Dict[str, float] = {}
        self.order_counter = 0
        self._connected = False

    async def connect(self) -> bool:
        """Simulate connection."""
        self._connected = True
        logger.info("Paper broker connected")
        return True

    async def close(self) -> None:
        """Simulate disconnection, abandoning pending fills."""
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        self._connected = False
        logger.info("Paper broker disconnected")

    @property
    def open_order_count(self) -> int:
        return len(self.orders)

    async def submit(self, order: Order) -> SubmitAck:
        if not self._connected:
            return SubmitAck(order.order_id, False, reason="broker_not_connected")

        if self._random.random() < self.rejection_rate:
            return SubmitAck(order.order_id, False, reason="insufficient buying power")

        price = self._market_prices.get(order.symbol) or order.intent.reference_price
        if order.order_type is OrderType.MARKET and price is None:
            return SubmitAck(order.order_id, False, reason=f"no_quote for {order.symbol}")

        self.order_counter += 1
        broker_order_id = f"PAPER_{self.order_counter:06d}"
        self.orders[order.order_id] = order
        logger.info(
            f"Order placed: {broker_order_id} {order.side.value} {order.quantity} {order.symbol}")

        if order.order_type is OrderType.MARKET:
            self._schedule_fill(order, price)
        return SubmitAck(order.order_id, True, broker_order_id=broker_order_id)

    def _schedule_fill(self, order: Order, price: float) -> None:
        self._tasks[order.order_id] = asyncio.create_task(
            self._simulate_fill(order, price), name=f"paper-fill:{order.order_id}")

    async def _simulate_fill(self, order: Order, reference: float) -> None:
        """Simulate order fill with delay."""
        try:
            await asyncio.sleep(self.fill_delay)
            if order.order_id not in self.orders:
                return

            price = self._market_prices.get(order.symbol, reference)
            if order.order_type is OrderType.MARKET:
                price *= 1 + order.side.sign * self.slippage_bps / 10000.0
            elif order.side is OrderSide.BUY:
                price = min(price, order.limit_price)
            else:
                price = max(price, order.limit_price)

            quantity = order.remaining_quantity
            del self.orders[order.order_id]
            await self._emit(ExecutionReport(
                order.order_id, ReportKind.FILL, self.clock(),
                quantity=quantity, price=price,
                commission=quantity * price * self.commission_bps / 10000.0,
            ))
            logger.info(f"Order filled: {order.order_id} @ {price:.4f}")
        except LedgerInvariantViolation as e:
            # Held by the order manager and raised from the engine loop
            logger.critical(f"Paper fill for order {order.order_id} failed: {e.message}")
        finally:
            self._tasks.pop(order.order_id, None)

    async def on_market_event(self, event: MarketEvent) -> None:
        self._market_prices[event.symbol] = event.price
        for order in list(self.orders.values()):
            if order.symbol != event.symbol or order.order_type is not OrderType.LIMIT:
                continue
            if order.order_id in self._tasks:
                continue
            crossed = (
                event.price <= order.limit_price if order.side is OrderSide.BUY
                else event.price >= order.limit_price
            )
            if crossed:
                self._schedule_fill(order, event.price)

    async def cancel(self, order_id: int) -> CancelAck:
        order = self.orders.pop(order_id, None)
        if order is None:
            return CancelAck(order_id, False, reason="unknown_order")
        task = self._tasks.pop(order_id, None)
        if task is not None:
            task.cancel()
        logger.info(f"Order canceled: {order_id}")
        await self._emit(ExecutionReport(order_id, ReportKind.CANCEL, self.clock(), reason="cancel_requested"))
        return CancelAck(order_id, True)

    async def flush(self, timestamp: datetime, reason: str = "shutdown") -> None:
        """Cancel limit orders still resting. In-flight market fills complete."""
        for order_id, order in list(self.orders.items()):
            if order_id in self._tasks:
                continue
            del self.orders[order_id]
            await self._emit(ExecutionReport(order_id, ReportKind.CANCEL, timestamp, reason=reason))

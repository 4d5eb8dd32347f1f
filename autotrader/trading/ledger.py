# autotrader/trading/ledger.py - Account and position ledger
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from autotrader.models.trading import EPSILON, Account, AccountSnapshot, Order, Position
from autotrader.utils.exceptions import LedgerInvariantViolation

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[AccountSnapshot], None]


class Ledger:
    """Single source of truth for cash and positions of one account.

    Fills are the only mutation that changes quantities or cash, and they are
    applied one at a time under the ledger lock in arrival order. Mark prices
    only recompute unrealized PnL.
    """

    def __init__(self, account: Account):
        self.account = account
        self.initial_equity = account.equity
        self.prices: Dict[str, float] = {
            s: p.last_price for s, p in account.positions.items() if p.last_price is not None
        }
        self.version = 0
        self.as_of: Optional[datetime] = None
        self.total_commission = 0.0
        self.fills: List[Dict] = []
        self._lock = asyncio.Lock()
        self._listeners: List[SnapshotListener] = []

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    async def apply_fill(self, order: Order, fill_quantity: float, fill_price: float,
                         commission: float = 0.0, timestamp: Optional[datetime] = None) -> AccountSnapshot:
        """Apply one fill to the position and cash balance atomically.

        Args:
            order: Open order the fill belongs to
            fill_quantity: Unsigned filled quantity
            fill_price: Execution price
            commission: Fee charged on the fill
            timestamp: Fill time

        Returns:
            Snapshot after the fill

        Raises:
            LedgerInvariantViolation: Fill on a terminal order, non-positive
                quantity or price, or a fill exceeding the remaining quantity
        """
        async with self._lock:
            self._validate(order, fill_quantity, fill_price, commission)

            signed = order.side.sign * fill_quantity
            self.account.cash -= signed * fill_price + commission
            self.total_commission += commission
            self._apply_to_position(order.symbol, signed, fill_price)

            self.version += 1
            if timestamp is not None and (self.as_of is None or timestamp > self.as_of):
                self.as_of = timestamp
            self.fills.append({
                'order_id': order.order_id,
                'timestamp': timestamp,
                'symbol': order.symbol,
                'side': order.side.value,
                'quantity': fill_quantity,
                'price': fill_price,
                'commission': commission,
            })

            logger.debug(
                f"Fill applied: order {order.order_id} {order.side.value} {fill_quantity} "
                f"{order.symbol} @ {fill_price:.4f} cash={self.account.cash:.2f}"
            )

            snapshot = self.snapshot()
            self._notify(snapshot)
            return snapshot

    def _validate(self, order: Order, quantity: float, price: float, commission: float) -> None:
        details = {'order_id': order.order_id, 'quantity': quantity, 'price': price}
        if order.is_terminal or order.sealed:
            raise LedgerInvariantViolation(
                f"Fill on terminal order {order.order_id} ({order.state.value})", details=details)
        if not quantity > 0:
            raise LedgerInvariantViolation(
                f"Non-positive fill quantity {quantity} for order {order.order_id}", details=details)
        if price is None or not price > 0:
            raise LedgerInvariantViolation(
                f"Non-positive fill price {price} for order {order.order_id}", details=details)
        if commission < 0:
            raise LedgerInvariantViolation(
                f"Negative commission {commission} for order {order.order_id}", details=details)
        if quantity > order.remaining_quantity + EPSILON:
            details['remaining'] = order.remaining_quantity
            raise LedgerInvariantViolation(
                f"Overfill on order {order.order_id}: fill {quantity} > remaining "
                f"{order.remaining_quantity}",
                details=details,
            )

    def _apply_to_position(self, symbol: str, signed: float, price: float) -> None:
        positions = self.account.positions
        position = positions.get(symbol)
        if position is None:
            position = positions[symbol] = Position(symbol=symbol)

        current = position.quantity
        new_quantity = current + signed

        if abs(current) <= EPSILON or current * signed > 0:
            # Increase, volume-weighted entry
            total = abs(current) + abs(signed)
            position.avg_entry_price = (abs(current) * position.avg_entry_price + abs(signed) * price) / total
            position.quantity = new_quantity
        else:
            closed = min(abs(signed), abs(current))
            direction = 1 if current > 0 else -1
            position.realized_pnl += (price - position.avg_entry_price) * closed * direction

            if abs(new_quantity) <= EPSILON:
                self.account.realized_pnl += position.realized_pnl
                del positions[symbol]
                logger.info(f"Position closed: {symbol} realized={position.realized_pnl:.2f}")
                return
            if new_quantity * current < 0:
                # Zero-crossing, remainder opens at the fill price
                self.account.realized_pnl += position.realized_pnl
                position = positions[symbol] = Position(
                    symbol=symbol, quantity=new_quantity, avg_entry_price=price)
                logger.info(f"Position flipped: {symbol} now {new_quantity}")
            else:
                position.quantity = new_quantity

        position.revalue(self.prices.get(symbol, price))

    async def mark_price(self, symbol: str, price: float, timestamp: Optional[datetime] = None) -> None:
        """Record a market price and recompute unrealized PnL. Not a fill."""
        if not price > 0:
            return
        async with self._lock:
            self.prices[symbol] = price
            if timestamp is not None and (self.as_of is None or timestamp > self.as_of):
                self.as_of = timestamp
            position = self.account.positions.get(symbol)
            if position is not None:
                position.revalue(price)

    def snapshot(self) -> AccountSnapshot:
        """Read-only view of the current account state."""
        return AccountSnapshot.of(self.account, as_of=self.as_of, version=self.version, prices=self.prices)

    def position(self, symbol: str) -> Optional[Position]:
        position = self.account.positions.get(symbol)
        return position.copy() if position else None

    def _notify(self, snapshot: AccountSnapshot) -> None:
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Ledger listener {listener!r} failed: {e}", exc_info=True)

# autotrader/strategies/base.py - Strategy capability
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from autotrader.models.trading import (
    MarketEvent, Order, OrderSide, OrderState, OrderType, TradeIntent,
)

logger = logging.getLogger(__name__)


class Strategy(ABC):
    """Base strategy class.

    A strategy owns only private state. It sees market events one at a time in
    timestamp order and answers with trade intents; it is told about fills and
    about orders that ended without filling (cancelled or rejected).

    ``symbols`` restricts delivery to a symbol set; None means every symbol on
    the bus.
    """

    def __init__(self, strategy_id: str, config: Dict = None, symbols: Optional[Iterable[str]] = None):
        self.strategy_id = strategy_id
        self.config = config or {}
        configured = symbols if symbols is not None else self.config.get('symbols')
        self.symbols = frozenset(configured) if configured else None
        self.position: Dict[str, float] = {}  # symbol -> net filled quantity

    @abstractmethod
    async def on_event(self, event: MarketEvent) -> List[TradeIntent]:
        """Handle one market event.

        Args:
            event: Next event for a subscribed symbol

        Returns:
            Trade intents to pass to risk evaluation (may be empty)
        """
        pass

    async def on_fill(self, order: Order) -> None:
        """Update the private position view once an order has filled quantity.

        Args:
            order: Terminal order with a non-zero filled quantity
        """
        if order.filled_quantity <= 0:
            return
        current = self.position.get(order.symbol, 0.0)
        self.position[order.symbol] = current + order.side.sign * order.filled_quantity

    async def on_order_update(self, order: Order) -> None:
        """Handle an order that was cancelled or rejected."""
        if order.state is OrderState.REJECTED:
            logger.info(f"[{self.strategy_id}] order {order.order_id} rejected: {order.terminal_reason}")

    def accepts(self, symbol: str) -> bool:
        return self.symbols is None or symbol in self.symbols

    def holding(self, symbol: str) -> float:
        return self.position.get(symbol, 0.0)

    def buy(self, event: MarketEvent, quantity: float, limit_price: Optional[float] = None,
            reason: str = "") -> TradeIntent:
        return self._intent(event, OrderSide.BUY, quantity, limit_price, reason)

    def sell(self, event: MarketEvent, quantity: float, limit_price: Optional[float] = None,
             reason: str = "") -> TradeIntent:
        return self._intent(event, OrderSide.SELL, quantity, limit_price, reason)

    def _intent(self, event: MarketEvent, side: OrderSide, quantity: float,
                limit_price: Optional[float], reason: str) -> TradeIntent:
        return TradeIntent(
            strategy_id=self.strategy_id,
            symbol=event.symbol,
            side=side,
            quantity=quantity,
            timestamp=event.timestamp,
            kind=OrderType.LIMIT if limit_price is not None else OrderType.MARKET,
            limit_price=limit_price,
            reference_price=event.price,
            reason=reason,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.strategy_id!r})"

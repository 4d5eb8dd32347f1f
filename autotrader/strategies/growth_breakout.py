# autotrader/strategies/growth_breakout.py - Pump detection on consecutive price growth
import logging
from typing import Dict, List, Optional, Set

from autotrader.models.trading import MarketEvent, Order, TradeIntent
from autotrader.strategies.base import Strategy
from autotrader.strategies.trailing_stop import TrailingStopLevel

logger = logging.getLogger(__name__)


class GrowthBreakout(Strategy):
    """Buy when the price jumps by more than a threshold between two events.

    Positions are protected by a trailing stop.

    Parameters:
    - growth_threshold: Minimum change in percent between consecutive events (default: 2.0)
    - transaction_amount: Cash per entry, sized as amount / price (default: 1000)
    - stop_loss_pct: Trailing stop distance as a fraction (default: 0.05)
    """

    def __init__(self, config: Dict = None, strategy_id: str = "growth_breakout"):
        config = config or {}
        super().__init__(config.get('id', strategy_id), config)
        self.growth_threshold = float(config.get('growth_threshold', 2.0))
        self.transaction_amount = float(config.get('transaction_amount', 1000.0))
        self.stop_loss_pct = float(config.get('stop_loss_pct', 0.05))
        if self.transaction_amount <= 0:
            raise ValueError(f"transaction_amount must be positive: {self.transaction_amount}")

        self.last_price: Dict[str, float] = {}
        self.levels: Dict[str, TrailingStopLevel] = {}
        self.in_flight: Set[str] = set()

    def growth(self, symbol: str, price: float) -> Optional[float]:
        """Percent change from the previous price, None on the first event."""
        previous = self.last_price.get(symbol)
        self.last_price[symbol] = price
        if previous is None or previous <= 0:
            return None
        return (price - previous) / previous * 100.0

    async def on_event(self, event: MarketEvent) -> List[TradeIntent]:
        symbol = event.symbol
        if event.price <= 0:
            return []

        change = self.growth(symbol, event.price)
        if symbol in self.in_flight:
            return []

        held = self.holding(symbol)
        if held > 0:
            level = self.levels.setdefault(symbol, TrailingStopLevel(event.price, self.stop_loss_pct))
            if level.update(event.price):
                self.in_flight.add(symbol)
                return [self.sell(event, held, reason='trailing_stop')]
            return []

        if change is not None and change >= self.growth_threshold:
            logger.info(
                f"[{self.strategy_id}] possible pump on {symbol}: growth {change:.2f}% "
                f"exceeds threshold {self.growth_threshold:.2f}%"
            )
            self.in_flight.add(symbol)
            return [self.buy(event, self.transaction_amount / event.price, reason='growth_breakout')]

        return []

    async def on_fill(self, order: Order) -> None:
        await super().on_fill(order)
        self.in_flight.discard(order.symbol)
        if self.holding(order.symbol) > 0:
            if order.side.sign > 0:
                self.levels[order.symbol] = TrailingStopLevel(order.avg_fill_price, self.stop_loss_pct)
        else:
            self.levels.pop(order.symbol, None)

    async def on_order_update(self, order: Order) -> None:
        await super().on_order_update(order)
        self.in_flight.discard(order.symbol)

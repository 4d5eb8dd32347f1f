# autotrader/strategies/trailing_stop.py - Enter-and-trail strategy with a ratcheting stop
import logging
from dataclasses import dataclass
from typing import Dict, List, Set

from autotrader.models.trading import MarketEvent, Order, TradeIntent, TrendDirection
from autotrader.strategies.base import Strategy

logger = logging.getLogger(__name__)


@dataclass
class TrailingStopLevel:
    """Stop level that follows the best price seen and never gives ground.

    Long (POSITIVE): the stop sits ``stop_loss_pct`` below the highest price
    and only moves up. Short (NEGATIVE): it sits ``stop_loss_pct`` above the
    lowest price and only moves down.
    """
    entry_price: float
    stop_loss_pct: float
    direction: TrendDirection = TrendDirection.POSITIVE
    extreme: float = 0.0
    stop_price: float = 0.0

    def __post_init__(self):
        self.extreme = self.entry_price
        self.stop_price = self._stop_for(self.entry_price)

    @property
    def high(self) -> float:
        return self.extreme

    def _stop_for(self, price: float) -> float:
        return price * (1 - self.direction.sign * self.stop_loss_pct)

    def update(self, price: float) -> bool:
        """Move the stop on a new extreme.

        Returns:
            True if price has reached the stop
        """
        sign = self.direction.sign
        if (price - self.extreme) * sign > 0:
            self.extreme = price
            new_stop = self._stop_for(price)
            if (new_stop - self.stop_price) * sign > 0:
                logger.debug(f"Stop moved {self.stop_price:.4f} -> {new_stop:.4f}")
                self.stop_price = new_stop
        return (self.stop_price - price) * sign >= 0


class TrailingStop(Strategy):
    """Enter with a fixed cash amount and exit on a trailing stop.

    Trading Logic:
    - Entry: No position and no order in flight, trade ``transaction_amount``
      (BUY for a positive direction, SELL short for a negative one)
    - Exit: Price reaches the trailing stop, close the position

    Parameters:
    - transaction_amount: Cash per entry (default: 1000)
    - stop_loss_pct: Trailing distance as a fraction (default: 0.05)
    - reenter: Enter again after a stop-out (default: False)
    - direction: positive / long or negative / short (default: positive)
    """

    def __init__(self, config: Dict = None, strategy_id: str = "trailing_stop"):
        config = config or {}
        super().__init__(config.get('id', strategy_id), config)
        self.transaction_amount = float(config.get('transaction_amount', 1000.0))
        self.stop_loss_pct = float(config.get('stop_loss_pct', 0.05))
        self.reenter = bool(config.get('reenter', False))
        self.direction = TrendDirection.parse(config.get('direction', 'positive'))
        if self.transaction_amount <= 0:
            raise ValueError(f"transaction_amount must be positive: {self.transaction_amount}")
        if not 0 < self.stop_loss_pct < 1:
            raise ValueError(f"stop_loss_pct must be in (0, 1): {self.stop_loss_pct}")

        self.levels: Dict[str, TrailingStopLevel] = {}
        self.in_flight: Set[str] = set()
        self.stopped_out: Set[str] = set()

    def exposure(self, symbol: str) -> float:
        """Position size on this strategy's side of the market, zero if none."""
        return max(self.holding(symbol) * self.direction.sign, 0.0)

    async def on_event(self, event: MarketEvent) -> List[TradeIntent]:
        symbol = event.symbol
        if event.price <= 0 or symbol in self.in_flight:
            return []

        held = self.exposure(symbol)
        if held > 0:
            level = self.levels.get(symbol)
            if level is None:
                level = self.levels[symbol] = TrailingStopLevel(
                    event.price, self.stop_loss_pct, self.direction)
            if level.update(event.price):
                logger.info(
                    f"[{self.strategy_id}] {symbol} hit trailing stop {level.stop_price:.4f} "
                    f"(extreme {level.extreme:.4f}, price {event.price:.4f})"
                )
                self.in_flight.add(symbol)
                return [self._exit(event, held)]
            return []

        if symbol in self.stopped_out and not self.reenter:
            return []

        self.in_flight.add(symbol)
        return [self._enter(event, self.transaction_amount / event.price)]

    def _enter(self, event: MarketEvent, quantity: float) -> TradeIntent:
        if self.direction is TrendDirection.POSITIVE:
            return self.buy(event, quantity, reason='entry')
        return self.sell(event, quantity, reason='short_entry')

    def _exit(self, event: MarketEvent, quantity: float) -> TradeIntent:
        if self.direction is TrendDirection.POSITIVE:
            return self.sell(event, quantity, reason='trailing_stop')
        return self.buy(event, quantity, reason='trailing_stop')

    async def on_fill(self, order: Order) -> None:
        await super().on_fill(order)
        symbol = order.symbol
        self.in_flight.discard(symbol)
        if self.exposure(symbol) > 0:
            if symbol not in self.levels or order.side.sign == self.direction.sign:
                self.levels[symbol] = TrailingStopLevel(
                    order.avg_fill_price, self.stop_loss_pct, self.direction)
        else:
            self.levels.pop(symbol, None)
            self.stopped_out.add(symbol)

    async def on_order_update(self, order: Order) -> None:
        await super().on_order_update(order)
        self.in_flight.discard(order.symbol)

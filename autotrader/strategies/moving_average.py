# autotrader/strategies/moving_average.py - Double moving average crossover strategy
import logging
from collections import deque
from typing import Dict, List, Optional

from autotrader.models.trading import MarketEvent, TradeIntent
from autotrader.strategies.base import Strategy

logger = logging.getLogger(__name__)


class MovingAverageCrossover(Strategy):
    """Double moving average crossover strategy.

    Trading Logic:
    - BUY: Fast MA crosses above Slow MA (golden cross)
    - SELL: Fast MA crosses below Slow MA (death cross), closes the holding

    Parameters:
    - fast_period: Fast MA period (default: 5)
    - slow_period: Slow MA period (default: 20)
    - quantity: Units bought on a golden cross (default: 100)
    """

    def __init__(self, config: Dict = None, strategy_id: str = "moving_average"):
        config = config or {}
        super().__init__(config.get('id', strategy_id), config)

        self.fast_period = int(config.get('fast_period', 5))
        self.slow_period = int(config.get('slow_period', 20))
        self.quantity = float(config.get('quantity', 100))
        if not 0 < self.fast_period < self.slow_period:
            raise ValueError(
                f"fast_period must be positive and below slow_period: "
                f"{self.fast_period} / {self.slow_period}"
            )

        self.price_history: Dict[str, deque] = {}

        # Last crossover direction per symbol, avoids repeated signals
        self.last_crossover: Dict[str, Optional[str]] = {}  # 'up' or 'down'

        logger.info(
            f"MA Strategy initialized: fast={self.fast_period}, "
            f"slow={self.slow_period}, quantity={self.quantity}"
        )

    async def on_event(self, event: MarketEvent) -> List[TradeIntent]:
        symbol = event.symbol
        if event.price <= 0:
            return []

        if symbol not in self.price_history:
            # slow_period + 1 prices to detect a crossover
            self.price_history[symbol] = deque(maxlen=self.slow_period + 1)
            self.last_crossover[symbol] = None

        self.price_history[symbol].append(event.price)

        crossover = self._detect_crossover(symbol)
        if crossover == 'golden' and self.last_crossover[symbol] != 'up':
            self.last_crossover[symbol] = 'up'
            logger.info(f"Golden cross detected: {symbol} @ {event.price:.2f}")
            return [self.buy(event, self.quantity, reason='golden_cross')]

        if crossover == 'death' and self.last_crossover[symbol] != 'down':
            self.last_crossover[symbol] = 'down'
            logger.info(f"Death cross detected: {symbol} @ {event.price:.2f}")
            held = self.holding(symbol)
            if held > 0:
                return [self.sell(event, held, reason='death_cross')]

        return []

    def _detect_crossover(self, symbol: str) -> Optional[str]:
        """Detect MA crossover.

        Returns:
            'golden': Fast MA crosses above Slow MA
            'death': Fast MA crosses below Slow MA
            None: No crossover
        """
        prices = list(self.price_history[symbol])
        if len(prices) <= self.slow_period:
            return None

        fast_ma, slow_ma = self._averages(prices)
        prev_fast_ma, prev_slow_ma = self._averages(prices[:-1])

        if prev_fast_ma <= prev_slow_ma and fast_ma > slow_ma:
            return 'golden'
        if prev_fast_ma >= prev_slow_ma and fast_ma < slow_ma:
            return 'death'
        return None

    def _averages(self, prices: List[float]):
        fast_ma = sum(prices[-self.fast_period:]) / self.fast_period
        slow_ma = sum(prices[-self.slow_period:]) / self.slow_period
        return fast_ma, slow_ma

    def get_indicators(self, symbol: str) -> Dict:
        """Get current indicator values for symbol."""
        prices = list(self.price_history.get(symbol, ()))
        if len(prices) < self.slow_period:
            return {}

        fast_ma, slow_ma = self._averages(prices)
        return {
            'fast_ma': fast_ma,
            'slow_ma': slow_ma,
            'current_price': prices[-1],
            'crossover_state': self.last_crossover.get(symbol),
        }

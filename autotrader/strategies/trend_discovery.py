# autotrader/strategies/trend_discovery.py - Trend scan over aggregated candles
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Dict, List, Optional, Sequence, Set

from autotrader.models.trading import MarketEvent, Order, TradeIntent, TrendDirection
from autotrader.strategies.base import Strategy
from autotrader.strategies.indicators import Bar, average_fluctuation, average_volume, rsi
from autotrader.strategies.trailing_stop import TrailingStopLevel

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)


@dataclass
class TrendSignal:
    """A symbol whose recent candles show a trend worth trading."""
    symbol: str
    direction: TrendDirection
    overall_growth: float
    recent_growth: float
    avg_fluct_raw: float
    avg_fluct_pct: float
    rsi: Optional[float] = None
    average_volume: Optional[float] = None


def evaluate_bars(symbol: str, bars: Sequence[Bar], lookback: int, recent: int,
                  direction: TrendDirection, min_growth_pct: float = 10.0,
                  min_candle_pct: float = 0.5, rsi_period: int = 14) -> Optional[TrendSignal]:
    """Check the last ``lookback`` candles for a trend.

    Positive trend:
    - close grew at least ``min_growth_pct`` since the first open
    - last close above the previous close
    - the last ``recent`` candles grew
    - the last two candles are green by at least ``min_candle_pct`` each

    Negative trend:
    - close fell at least ``min_growth_pct`` since the first open
    - last close not above the previous close
    - the last ``recent`` candles fell

    Returns:
        TrendSignal, or None if there are too few candles or no trend
    """
    if len(bars) < max(lookback, 2):
        return None
    bars = list(bars)[-lookback:]

    first, previous, last = bars[0], bars[-2], bars[-1]
    overall_growth = (last.close - first.open) / first.open * 100.0
    trending_up = last.close > previous.close

    recent_bars = bars[-recent:]
    recent_growth = (recent_bars[-1].close - recent_bars[0].open) / recent_bars[0].open * 100.0

    two_strong_green = (
        previous.close > previous.open and last.close > last.open
        and previous.change_pct >= min_candle_pct and last.change_pct >= min_candle_pct
    )

    if direction is TrendDirection.POSITIVE:
        valid = overall_growth >= min_growth_pct and trending_up and recent_growth > 0 and two_strong_green
    else:
        valid = overall_growth <= -min_growth_pct and not trending_up and recent_growth < 0
    if not valid:
        return None

    fluct_raw, fluct_pct = average_fluctuation(bars)
    return TrendSignal(
        symbol=symbol,
        direction=direction,
        overall_growth=overall_growth,
        recent_growth=recent_growth,
        avg_fluct_raw=fluct_raw,
        avg_fluct_pct=fluct_pct,
        rsi=rsi([bar.close for bar in bars], rsi_period),
        average_volume=average_volume(bar.volume for bar in bars),
    )


class TrendDiscovery(Strategy):
    """Trade symbols whose candles show a sustained trend.

    Events are aggregated into candles of ``bar_seconds``. Each time a candle
    closes the last ``lookback`` candles are evaluated; on a signal the
    strategy enters in the trend direction and exits on a trailing stop.

    Parameters:
    - direction: positive (long) or negative (short) (default: positive)
    - bar_seconds: Candle length in seconds (default: 3600)
    - lookback: Candles in the overall window (default: 48)
    - recent: Candles in the recent window (default: 4)
    - min_growth_pct: Overall move in percent (default: 10.0)
    - min_candle_pct: Minimum body of the last two green candles in percent (default: 0.5)
    - min_average_volume: Skip symbols trading less per candle (default: 0)
    - rsi_limit: Skip overbought (long) or oversold (short) symbols (default: off)
    - rsi_period: Candles in the RSI window (default: 14)
    - transaction_amount: Cash per entry (default: 1000)
    - stop_loss_pct: Trailing stop distance as a fraction (default: 0.05)
    """

    def __init__(self, config: Dict = None, strategy_id: str = "trend_discovery"):
        config = config or {}
        super().__init__(config.get('id', strategy_id), config)
        self.direction = TrendDirection.parse(config.get('direction', 'positive'))
        self.bar_seconds = float(config.get('bar_seconds', 3600))
        self.lookback = int(config.get('lookback', 48))
        self.recent = int(config.get('recent', 4))
        self.min_growth_pct = float(config.get('min_growth_pct', 10.0))
        self.min_candle_pct = float(config.get('min_candle_pct', 0.5))
        self.min_average_volume = float(config.get('min_average_volume', 0.0))
        limit = config.get('rsi_limit')
        self.rsi_limit = float(limit) if limit is not None else None
        self.rsi_period = int(config.get('rsi_period', 14))
        self.transaction_amount = float(config.get('transaction_amount', 1000.0))
        self.stop_loss_pct = float(config.get('stop_loss_pct', 0.05))

        if self.rsi_period <= 0:
            raise ValueError(f"rsi_period must be positive: {self.rsi_period}")
        if self.bar_seconds <= 0:
            raise ValueError(f"bar_seconds must be positive: {self.bar_seconds}")
        if self.lookback < 2 or not 0 < self.recent <= self.lookback:
            raise ValueError(
                f"Need lookback >= 2 and 0 < recent <= lookback: {self.lookback} / {self.recent}")
        if self.transaction_amount <= 0:
            raise ValueError(f"transaction_amount must be positive: {self.transaction_amount}")
        if not 0 < self.stop_loss_pct < 1:
            raise ValueError(f"stop_loss_pct must be in (0, 1): {self.stop_loss_pct}")

        self.bars: Dict[str, Deque[Bar]] = {}
        self.current: Dict[str, Bar] = {}
        self.bucket: Dict[str, int] = {}
        self.levels: Dict[str, TrailingStopLevel] = {}
        self.in_flight: Set[str] = set()
        self.signals: List[TrendSignal] = []

    def _bucket(self, timestamp: datetime) -> int:
        return int((timestamp - EPOCH).total_seconds() // self.bar_seconds)

    def _aggregate(self, event: MarketEvent) -> bool:
        """Add the event to its candle.

        Returns:
            True if the event opened a new candle, closing the previous one
        """
        symbol = event.symbol
        bucket = self._bucket(event.timestamp)
        current = self.current.get(symbol)
        if current is not None and bucket <= self.bucket[symbol]:
            current.add(event.price, event.volume)
            return False

        closed = current is not None
        if closed:
            self.bars.setdefault(symbol, deque(maxlen=self.lookback)).append(current)
        self.current[symbol] = Bar.start(event.price, event.volume)
        self.bucket[symbol] = bucket
        return closed

    def exposure(self, symbol: str) -> float:
        return max(self.holding(symbol) * self.direction.sign, 0.0)

    def scan(self, symbol: str) -> Optional[TrendSignal]:
        """Evaluate the closed candles of ``symbol`` against every filter."""
        signal = evaluate_bars(
            symbol, self.bars.get(symbol, ()), self.lookback, self.recent, self.direction,
            self.min_growth_pct, self.min_candle_pct, self.rsi_period,
        )
        if signal is None:
            return None
        if (signal.average_volume or 0.0) < self.min_average_volume:
            logger.debug(f"[{self.strategy_id}] {symbol} volume {signal.average_volume} below minimum")
            return None
        if self.rsi_limit is not None and signal.rsi is not None:
            stretched = (
                signal.rsi > self.rsi_limit if self.direction is TrendDirection.POSITIVE
                else signal.rsi < 100.0 - self.rsi_limit
            )
            if stretched:
                logger.debug(f"[{self.strategy_id}] {symbol} RSI {signal.rsi:.1f} past limit")
                return None
        return signal

    async def on_event(self, event: MarketEvent) -> List[TradeIntent]:
        symbol = event.symbol
        if event.price <= 0:
            return []

        closed = self._aggregate(event)
        if symbol in self.in_flight:
            return []

        held = self.exposure(symbol)
        if held > 0:
            level = self.levels.setdefault(
                symbol, TrailingStopLevel(event.price, self.stop_loss_pct, self.direction))
            if level.update(event.price):
                self.in_flight.add(symbol)
                if self.direction is TrendDirection.POSITIVE:
                    return [self.sell(event, held, reason='trailing_stop')]
                return [self.buy(event, held, reason='trailing_stop')]
            return []

        if not closed:
            return []
        signal = self.scan(symbol)
        if signal is None:
            return []

        logger.info(
            f"[{self.strategy_id}] {self.direction.value} trend on {symbol}: "
            f"overall {signal.overall_growth:.2f}%, recent {signal.recent_growth:.2f}%, "
            f"avg fluctuation {signal.avg_fluct_pct:.2f}%"
        )
        self.signals.append(signal)
        self.in_flight.add(symbol)
        quantity = self.transaction_amount / event.price
        if self.direction is TrendDirection.POSITIVE:
            return [self.buy(event, quantity, reason='trend_discovery')]
        return [self.sell(event, quantity, reason='trend_discovery')]

    async def on_fill(self, order: Order) -> None:
        await super().on_fill(order)
        self.in_flight.discard(order.symbol)
        if self.exposure(order.symbol) > 0:
            if order.side.sign == self.direction.sign:
                self.levels[order.symbol] = TrailingStopLevel(
                    order.avg_fill_price, self.stop_loss_pct, self.direction)
        else:
            self.levels.pop(order.symbol, None)

    async def on_order_update(self, order: Order) -> None:
        await super().on_order_update(order)
        self.in_flight.discard(order.symbol)

# autotrader/strategies/indicators.py - Price and volume indicators for strategies
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd


@dataclass
class Bar:
    """One aggregated candle."""
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @classmethod
    def start(cls, price: float, volume: float = 0.0) -> 'Bar':
        return cls(price, price, price, price, volume)

    def add(self, price: float, volume: float = 0.0) -> None:
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price
        self.volume += volume

    @property
    def change_pct(self) -> float:
        """Open to close change in percent."""
        return (self.close - self.open) / self.open * 100.0


def rsi(prices: Sequence[float], period: int = 14) -> Optional[float]:
    """Relative strength index over the last ``period`` price changes.

    Gains and losses are simple averages (Cutler's RSI).

    Returns:
        RSI in [0, 100], or None with fewer than ``period + 1`` prices
    """
    if period <= 0:
        raise ValueError(f"RSI period must be positive: {period}")
    if len(prices) < period + 1:
        return None

    changes = np.diff(np.asarray(prices[-(period + 1):], dtype=float))
    avg_gain = changes.clip(min=0).mean()
    avg_loss = (-changes).clip(min=0).mean()
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100.0 - 100.0 / (1.0 + rs))


def rsi_series(prices: pd.Series, period: int = 14) -> pd.Series:
    """Rolling RSI; NaN until ``period`` changes are available."""
    changes = prices.astype(float).diff()
    avg_gain = changes.clip(lower=0).rolling(period).mean()
    avg_loss = (-changes).clip(lower=0).rolling(period).mean()
    values = 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)
    # No losses in the window
    return values.where(avg_loss != 0, 100.0).where(avg_gain.notna())


def average_volume(volumes: Iterable[float]) -> Optional[float]:
    """Mean of the finite volumes, None if there are none."""
    values = np.asarray([v for v in volumes if v is not None], dtype=float)
    values = values[np.isfinite(values)]
    if values.size == 0:
        return None
    return float(values.mean())


def average_fluctuation(bars: Sequence[Bar]):
    """Mean high-low range of the bars, raw and as percent of the low.

    Bars with a non-positive high or low are skipped.
    """
    ranges = [(bar.high - bar.low, (bar.high - bar.low) / bar.low * 100.0)
              for bar in bars if bar.high > 0 and bar.low > 0]
    if not ranges:
        return 0.0, 0.0
    raw, pct = zip(*ranges)
    return float(np.mean(raw)), float(np.mean(pct))

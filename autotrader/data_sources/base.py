# autotrader/data_sources/base.py - Market data collaborator interfaces
from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncIterator, Iterable, Iterator, Optional

from autotrader.models.trading import MarketEvent


class HistoricalDataSource(ABC):
    """Stored, timestamp-ordered market history for replay."""

    @abstractmethod
    def read(self, symbol: str, start: Optional[datetime] = None,
             end: Optional[datetime] = None) -> Iterator[MarketEvent]:
        """Read events for one symbol in timestamp order.

        Must be restartable: every call returns a fresh iterator over the
        same data.

        Args:
            symbol: Instrument symbol
            start: Inclusive lower bound, None for the beginning
            end: Inclusive upper bound, None for the end

        Returns:
            Iterator of MarketEvent in timestamp order
        """
        pass

    def symbols(self) -> Iterable[str]:
        """Symbols available from this source."""
        return []


class LiveFeedSource(ABC):
    """Realtime market data feed."""

    name: str = "feed"

    @abstractmethod
    def connect(self, symbols: Iterable[str]) -> AsyncIterator[MarketEvent]:
        """Open the feed for the given symbols.

        The returned iterator runs until the feed disconnects. Reconnection
        and backfill are the feed's own business.
        """
        pass

# autotrader/data_sources/live.py - In-process live feed
import asyncio
import logging
from typing import AsyncIterator, Iterable, Optional

from autotrader.data_sources.base import LiveFeedSource
from autotrader.models.trading import MarketEvent
from autotrader.utils.exceptions import DataGapFault

logger = logging.getLogger(__name__)

_DISCONNECT = object()


class QueueFeedSource(LiveFeedSource):
    """Live feed fed by an in-process producer.

    Exchange clients push normalized events with ``publish``; the engine
    consumes them through ``connect``. ``disconnect`` ends the stream and
    ``fail`` ends it with a DataGapFault.
    """

    def __init__(self, name: str = "queue_feed", maxsize: int = 0):
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.is_connected = False
        self.published = 0

    async def publish(self, event: MarketEvent) -> None:
        await self._queue.put(event)
        self.published += 1

    def publish_nowait(self, event: MarketEvent) -> None:
        self._queue.put_nowait(event)
        self.published += 1

    def disconnect(self) -> None:
        self._queue.put_nowait(_DISCONNECT)

    def fail(self, reason: str) -> None:
        self._queue.put_nowait(DataGapFault(reason, details={'feed': self.name}))

    async def connect(self, symbols: Optional[Iterable[str]] = None) -> AsyncIterator[MarketEvent]:
        wanted = set(symbols) if symbols else None
        self.is_connected = True
        logger.info(f"Feed {self.name} connected")
        try:
            while True:
                item = await self._queue.get()
                if item is _DISCONNECT:
                    logger.info(f"Feed {self.name} disconnected")
                    return
                if isinstance(item, Exception):
                    raise item
                if wanted is None or item.symbol in wanted:
                    yield item
        finally:
            self.is_connected = False

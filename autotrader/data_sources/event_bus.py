# autotrader/data_sources/event_bus.py - Ordered market event stream for replay and live modes
import asyncio
import heapq
import itertools
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, List, Optional

from autotrader.data_sources.base import HistoricalDataSource, LiveFeedSource
from autotrader.models.trading import MarketEvent
from autotrader.utils.exceptions import DataGapFault
from autotrader.utils.timestamps import to_engine_time

logger = logging.getLogger(__name__)

FaultHandler = Callable[[Exception], None]


class PacingMode(Enum):
    """Replay pacing."""
    FULL_SPEED = "full_speed"
    WALL_CLOCK = "wall_clock"


class Subscription(ABC):
    """Lazy, ordered sequence of market events.

    Use with ``async for``. ``close()`` stops delivery and releases buffers;
    events already delivered are not recalled.
    """

    def __init__(self, symbols: Iterable[str], fault_handler: Optional[FaultHandler] = None):
        self.symbols = list(symbols)
        self.closed = False
        self.delivered = 0
        self.out_of_order = 0
        self._sequence = itertools.count()
        self._last_timestamp: Optional[datetime] = None
        self._fault_handler = fault_handler

    def __aiter__(self):
        return self

    async def __anext__(self) -> MarketEvent:
        if self.closed:
            raise StopAsyncIteration
        event = await self._next_event()
        if event is None:
            await self.close()
            raise StopAsyncIteration
        self.delivered += 1
        return event

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @abstractmethod
    async def _next_event(self) -> Optional[MarketEvent]:
        """Return the next event, or None once the stream is exhausted."""
        pass

    async def close(self) -> None:
        self.closed = True

    def _stamp(self, event: MarketEvent) -> MarketEvent:
        """Assign the arrival sequence number and move the timestamp to engine time."""
        return replace(event, timestamp=to_engine_time(event.timestamp), sequence=next(self._sequence))

    def _release(self, event: MarketEvent) -> MarketEvent:
        """Flag events older than what has already been released."""
        if self._last_timestamp is not None and event.timestamp < self._last_timestamp:
            self.out_of_order += 1
            logger.warning(
                f"Out-of-order event {event.symbol} @ {event.timestamp.isoformat()} "
                f"(last released {self._last_timestamp.isoformat()})"
            )
            return replace(event, out_of_order=True)
        self._last_timestamp = event.timestamp
        return event

    def _report(self, fault: Exception) -> None:
        if self._fault_handler is None:
            return
        try:
            self._fault_handler(fault)
        except Exception as e:
            logger.error(f"Fault handler error: {e}", exc_info=True)


class MarketEventBus(ABC):
    """Normalizes ticks from any source into one ordered event stream."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self.fault_handler: Optional[FaultHandler] = None

    def subscribe(self, symbols: Iterable[str]) -> Subscription:
        subscription = self._open(list(symbols))
        self._subscriptions.append(subscription)
        return subscription

    @abstractmethod
    def _open(self, symbols: List[str]) -> Subscription:
        pass

    async def close(self) -> None:
        """Close every open subscription (run-level shutdown)."""
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.close()
        logger.info("Event bus closed")


class ReplaySubscription(Subscription):
    """K-way merge of per-symbol historical streams."""

    def __init__(self, bus: 'ReplayEventBus', symbols: List[str]):
        super().__init__(symbols, bus.fault_handler)
        self._bus = bus
        self._wake = asyncio.Event()
        self._previous: Optional[datetime] = None
        streams = [bus.source.read(symbol, bus.start, bus.end) for symbol in symbols]
        # Ties keep stream order, then per-stream order
        self._merged = heapq.merge(*streams, key=lambda e: to_engine_time(e.timestamp))

    async def _next_event(self) -> Optional[MarketEvent]:
        try:
            event = next(self._merged)
        except StopIteration:
            logger.info(f"Replay exhausted after {self.delivered} events")
            return None
        except DataGapFault as e:
            logger.warning(f"Replay data gap: {e.message}")
            self._report(e)
            return None

        event = self._stamp(event)
        await self._pace(event)
        if self.closed:
            return None

        return self._release(event)

    async def _pace(self, event: MarketEvent) -> None:
        previous, self._previous = self._previous, event.timestamp
        if self._bus.pacing is PacingMode.FULL_SPEED or previous is None:
            # Yield so shutdown requests from other tasks are observed
            await asyncio.sleep(0)
            return

        delay = (event.timestamp - previous).total_seconds() / self._bus.speed
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def close(self) -> None:
        if self.closed:
            return
        await super().close()
        self._wake.set()
        self._merged = iter(())


class ReplayEventBus(MarketEventBus):
    """Deterministic re-delivery of historical events for backtesting."""

    def __init__(self, source: HistoricalDataSource, start: Optional[datetime] = None,
                 end: Optional[datetime] = None, pacing: PacingMode = PacingMode.FULL_SPEED,
                 speed: float = 1.0):
        super().__init__()
        if speed <= 0:
            raise ValueError(f"Replay speed must be positive: {speed}")
        self.source = source
        self.start = start
        self.end = end
        self.pacing = PacingMode(pacing)
        self.speed = speed

    def _open(self, symbols: List[str]) -> Subscription:
        return ReplaySubscription(self, symbols)


_FEED_DONE = object()
_CLOSED = object()


class LiveSubscription(Subscription):
    """Merges several live feeds with a bounded reordering horizon.

    Each arriving event waits at most ``horizon`` seconds. When the oldest
    buffered arrival expires, every buffered event up to the newest expired
    timestamp is released in timestamp order. Events older than anything
    already released go out immediately, flagged out-of-order.
    """

    def __init__(self, bus: 'LiveEventBus', symbols: List[str]):
        super().__init__(symbols, bus.fault_handler)
        self._horizon = bus.horizon
        self._clock = bus.clock
        self._queue: asyncio.Queue = asyncio.Queue()
        self._heap: list = []  # (timestamp, sequence, arrival, event)
        self._ready: deque = deque()
        self._active = len(bus.feeds)
        self._tasks = [
            asyncio.create_task(self._pump(feed), name=f"feed:{getattr(feed, 'name', 'feed')}")
            for feed in bus.feeds
        ]

    async def _pump(self, feed: LiveFeedSource) -> None:
        name = getattr(feed, 'name', type(feed).__name__)
        try:
            async for event in feed.connect(self.symbols):
                self._queue.put_nowait((event, self._clock()))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            fault = e if isinstance(e, DataGapFault) else DataGapFault(
                f"Feed {name} failed: {e}", details={'feed': name})
            logger.warning(f"Data gap on feed {name}: {fault.message}")
            self._report(fault)
        finally:
            self._queue.put_nowait((_FEED_DONE, None))

    async def _next_event(self) -> Optional[MarketEvent]:
        while True:
            if self._ready:
                return self._ready.popleft()
            if self.closed:
                return None
            if self._active == 0:
                if not self._heap:
                    return None
                self._flush()
                continue

            timeout = None
            if self._heap:
                timeout = max(0.0, self._next_deadline() - self._clock())
            try:
                item, arrival = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                item = None

            if item is _CLOSED:
                return None
            if item is _FEED_DONE:
                self._active -= 1
            elif item is not None:
                self._ingest(item, arrival)
            self._release_due()

    def _ingest(self, event: MarketEvent, arrival: float) -> None:
        event = self._stamp(event)
        late = self._last_timestamp is not None and event.timestamp < self._last_timestamp
        if late or self._horizon <= 0:
            self._ready.append(self._release(event))
            return
        heapq.heappush(self._heap, (event.timestamp, event.sequence, arrival, event))

    def _next_deadline(self) -> float:
        return min(entry[2] for entry in self._heap) + self._horizon

    def _release_due(self) -> None:
        if not self._heap:
            return
        now = self._clock()
        expired = [entry[:2] for entry in self._heap if entry[2] + self._horizon <= now]
        if not expired:
            return
        cutoff = max(expired)
        while self._heap and self._heap[0][:2] <= cutoff:
            self._ready.append(self._release(heapq.heappop(self._heap)[3]))

    def _flush(self) -> None:
        while self._heap:
            self._ready.append(self._release(heapq.heappop(self._heap)[3]))

    async def close(self) -> None:
        if self.closed:
            return
        await super().close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._heap.clear()
        self._ready.clear()
        self._queue.put_nowait((_CLOSED, None))


class LiveEventBus(MarketEventBus):
    """Multiplexes one or more live feeds into a single ordered stream."""

    def __init__(self, feeds: Iterable[LiveFeedSource], horizon: float = 0.25,
                 clock: Optional[Callable[[], float]] = None):
        super().__init__()
        self.feeds = list(feeds)
        if not self.feeds:
            raise ValueError("Live event bus needs at least one feed")
        if horizon < 0:
            raise ValueError(f"Out-of-order horizon must not be negative: {horizon}")
        self.horizon = horizon
        self.clock = clock or (lambda: asyncio.get_running_loop().time())

    def _open(self, symbols: List[str]) -> Subscription:
        return LiveSubscription(self, symbols)

# autotrader/trading/clock.py - Engine time source
from datetime import datetime
from typing import Callable, Optional

from autotrader.utils.timestamps import utc_now


class EngineClock:
    """Current engine time.

    In replay mode time is the timestamp of the last event, so a backtest's
    order and expiry timestamps depend only on the data.

    In live mode time stays on the feed's time base: the last event timestamp
    plus the wall-clock time elapsed since that event arrived. Before the
    first event it is the wall clock. Readings never go backwards.
    """

    def __init__(self, replay: bool = True, wall: Callable[[], datetime] = utc_now):
        self.replay = replay
        self._wall = wall
        self._current: Optional[datetime] = None
        self._anchor: Optional[datetime] = None  # wall time when _current was set
        self._last_reading: Optional[datetime] = None

    def advance(self, timestamp: datetime) -> None:
        if self._current is None or timestamp > self._current:
            self._current = timestamp
            if not self.replay:
                self._anchor = self._wall()

    def now(self) -> datetime:
        if self.replay:
            if self._current is None:
                raise RuntimeError("Replay clock read before the first event")
            return self._current

        wall = self._wall()
        if self._current is None:
            return wall
        reading = self._current + (wall - self._anchor)
        if self._last_reading is not None and reading < self._last_reading:
            reading = self._last_reading
        self._last_reading = reading
        return reading

    __call__ = now

    @property
    def last_event_time(self) -> Optional[datetime]:
        return self._current

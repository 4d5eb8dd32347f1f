# tests/test_event_bus.py - Market event bus tests
import asyncio
from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from autotrader.data_sources.base import HistoricalDataSource
from autotrader.data_sources.event_bus import LiveEventBus, PacingMode, ReplayEventBus
from autotrader.data_sources.historical import (
    CsvHistoricalSource, DataFrameHistoricalSource, InMemoryHistoricalSource,
)
from autotrader.data_sources.live import QueueFeedSource
from autotrader.models.trading import MarketEvent
from autotrader.utils.exceptions import DataGapFault


async def collect(subscription):
    return [event async for event in subscription]


class GappySource(HistoricalDataSource):
    """Yields one event, then fails."""

    def __init__(self, event):
        self.event = event

    def read(self, symbol, start=None, end=None):
        yield self.event
        raise DataGapFault(f"Missing history for {symbol}")


class TestReplayEventBus:
    """Test deterministic replay."""

    @pytest.mark.asyncio
    async def test_merges_symbols_in_timestamp_order(self, make_event):
        source = InMemoryHistoricalSource([
            make_event("A", 0), make_event("A", 2), make_event("A", 4),
            make_event("B", 1), make_event("B", 3),
        ])
        bus = ReplayEventBus(source)

        events = await collect(bus.subscribe(["A", "B"]))

        assert [e.symbol for e in events] == ["A", "B", "A", "B", "A"]
        assert [e.sequence for e in events] == [0, 1, 2, 3, 4]
        assert not any(e.out_of_order for e in events)

    @pytest.mark.asyncio
    async def test_timestamp_ties_keep_subscription_order(self, make_event):
        source = InMemoryHistoricalSource([make_event("B", 0), make_event("A", 0)])
        bus = ReplayEventBus(source)

        events = await collect(bus.subscribe(["A", "B"]))

        assert [e.symbol for e in events] == ["A", "B"]
        assert events[0].sequence < events[1].sequence

    @pytest.mark.asyncio
    async def test_replay_is_restartable(self, make_event):
        source = InMemoryHistoricalSource([make_event("A", s, price=10 + s) for s in range(5)])
        bus = ReplayEventBus(source)

        first = await collect(bus.subscribe(["A"]))
        second = await collect(bus.subscribe(["A"]))

        assert first == second
        assert len(first) == 5

    @pytest.mark.asyncio
    async def test_time_range(self, make_event, at):
        source = InMemoryHistoricalSource([make_event("A", s) for s in range(10)])
        bus = ReplayEventBus(source, start=at(2), end=at(5))

        events = await collect(bus.subscribe(["A"]))

        assert [e.timestamp for e in events] == [at(2), at(3), at(4), at(5)]

    @pytest.mark.asyncio
    async def test_close_stops_delivery(self, make_event):
        source = InMemoryHistoricalSource([make_event("A", s) for s in range(10)])
        bus = ReplayEventBus(source)
        subscription = bus.subscribe(["A"])

        received = []
        async for event in subscription:
            received.append(event)
            if len(received) == 3:
                await subscription.close()

        assert len(received) == 3
        assert subscription.closed

    @pytest.mark.asyncio
    async def test_data_gap_reported_and_stream_ends(self, make_event):
        faults = []
        bus = ReplayEventBus(GappySource(make_event("A", 0)))
        bus.fault_handler = faults.append

        events = await collect(bus.subscribe(["A"]))

        assert len(events) == 1
        assert len(faults) == 1
        assert isinstance(faults[0], DataGapFault)

    @pytest.mark.asyncio
    async def test_wall_clock_pacing(self, make_event):
        source = InMemoryHistoricalSource([make_event("A", s) for s in range(3)])
        bus = ReplayEventBus(source, pacing=PacingMode.WALL_CLOCK, speed=1000.0)

        loop = asyncio.get_running_loop()
        started = loop.time()
        events = await collect(bus.subscribe(["A"]))

        assert len(events) == 3
        # Two one-second gaps at 1000x
        assert loop.time() - started >= 0.001

    @pytest.mark.asyncio
    async def test_aware_timestamps_normalized_to_utc(self):
        utc_event = MarketEvent("A", datetime(2024, 1, 2, 9, 30, 5, tzinfo=timezone.utc), 10.0)
        # 17:30 at +08:00 is 09:30 UTC, earlier than the UTC event
        offset_event = MarketEvent("B", datetime(2024, 1, 2, 17, 30, tzinfo=timezone(timedelta(hours=8))), 11.0)
        bus = ReplayEventBus(InMemoryHistoricalSource([utc_event, offset_event]))

        events = await collect(bus.subscribe(["A", "B"]))

        assert [e.symbol for e in events] == ["B", "A"]
        assert [e.timestamp for e in events] == [
            datetime(2024, 1, 2, 9, 30), datetime(2024, 1, 2, 9, 30, 5)]
        assert all(e.timestamp.tzinfo is None for e in events)

    def test_invalid_speed(self):
        with pytest.raises(ValueError):
            ReplayEventBus(InMemoryHistoricalSource(), speed=0)


class TestHistoricalSources:
    """Test historical data sources."""

    def test_dataframe_source(self, at):
        frame = pd.DataFrame({
            'date': [at(2), at(0), at(1)],
            'close': [12.0, 10.0, 11.0],
            'volume': [300, 100, 200],
        })
        source = DataFrameHistoricalSource({'X': frame})

        events = list(source.read('X'))

        assert [e.price for e in events] == [10.0, 11.0, 12.0]
        assert [e.volume for e in events] == [100.0, 200.0, 300.0]
        assert list(source.symbols()) == ['X']

    def test_dataframe_source_missing_columns(self):
        with pytest.raises(DataGapFault):
            DataFrameHistoricalSource({'X': pd.DataFrame({'foo': [1]})})

    def test_csv_source(self, tmp_path):
        (tmp_path / "ABC.csv").write_text(
            "timestamp,price,volume\n"
            "2024-01-02 09:30:00,10.0,100\n"
            "2024-01-02 09:30:01,10.5,50\n"
        )
        source = CsvHistoricalSource(tmp_path)

        events = list(source.read("ABC"))

        assert list(source.symbols()) == ["ABC"]
        assert [e.price for e in events] == [10.0, 10.5]
        assert events[0].symbol == "ABC"

    def test_csv_source_with_utc_offsets(self, tmp_path):
        (tmp_path / "ABC.csv").write_text(
            "timestamp,price\n"
            "2024-01-02 04:30:01-05:00,10.5\n"
            "2024-01-02 09:30:00+00:00,10.0\n"
        )
        source = CsvHistoricalSource(tmp_path)

        events = list(source.read("ABC", start=datetime(2024, 1, 2, 9, 30)))

        assert [e.price for e in events] == [10.0, 10.5]
        assert [e.timestamp for e in events] == [
            datetime(2024, 1, 2, 9, 30), datetime(2024, 1, 2, 9, 30, 1)]


class TestLiveEventBus:
    """Test live feed multiplexing."""

    @pytest.mark.asyncio
    async def test_buffered_events_released_in_timestamp_order(self, make_event):
        feed_a = QueueFeedSource("a")
        feed_b = QueueFeedSource("b")
        feed_a.publish_nowait(make_event("A", 2))
        feed_b.publish_nowait(make_event("B", 1))
        feed_a.publish_nowait(make_event("A", 3))
        feed_a.disconnect()
        feed_b.disconnect()
        bus = LiveEventBus([feed_a, feed_b], horizon=5.0)

        events = await asyncio.wait_for(collect(bus.subscribe([])), timeout=2)

        assert [e.symbol for e in events] == ["B", "A", "A"]
        assert [e.timestamp for e in events] == sorted(e.timestamp for e in events)
        assert not any(e.out_of_order for e in events)

    @pytest.mark.asyncio
    async def test_late_event_flagged_not_reordered(self, make_event):
        feed = QueueFeedSource()
        feed.publish_nowait(make_event("A", 5))
        feed.publish_nowait(make_event("A", 1))
        feed.disconnect()
        bus = LiveEventBus([feed], horizon=0)

        subscription = bus.subscribe(["A"])
        events = await asyncio.wait_for(collect(subscription), timeout=2)

        assert [e.timestamp.second for e in events] == [5, 1]
        assert events[0].out_of_order is False
        assert events[1].out_of_order is True
        assert subscription.out_of_order == 1

    @pytest.mark.asyncio
    async def test_mixed_naive_and_aware_feeds(self, make_event):
        feed_a = QueueFeedSource("a")
        feed_b = QueueFeedSource("b")
        feed_a.publish_nowait(make_event("A", 2))
        feed_b.publish_nowait(MarketEvent(
            "B", datetime(2024, 1, 2, 4, 30, 1, tzinfo=timezone(timedelta(hours=-5))), 10.0))
        feed_a.disconnect()
        feed_b.disconnect()
        bus = LiveEventBus([feed_a, feed_b], horizon=5.0)

        events = await asyncio.wait_for(collect(bus.subscribe([])), timeout=2)

        assert [e.symbol for e in events] == ["B", "A"]
        assert events[0].timestamp == datetime(2024, 1, 2, 9, 30, 1)
        assert not any(e.out_of_order for e in events)

    @pytest.mark.asyncio
    async def test_horizon_expiry_releases_without_disconnect(self, make_event):
        feed = QueueFeedSource()
        bus = LiveEventBus([feed], horizon=0.01)
        subscription = bus.subscribe(["A"])
        await feed.publish(make_event("A", 0))

        event = await asyncio.wait_for(subscription.__anext__(), timeout=2)

        assert event.symbol == "A"
        await subscription.close()

    @pytest.mark.asyncio
    async def test_symbol_filter(self, make_event):
        feed = QueueFeedSource()
        feed.publish_nowait(make_event("A", 0))
        feed.publish_nowait(make_event("B", 1))
        feed.disconnect()
        bus = LiveEventBus([feed], horizon=0)

        events = await asyncio.wait_for(collect(bus.subscribe(["B"])), timeout=2)

        assert [e.symbol for e in events] == ["B"]

    @pytest.mark.asyncio
    async def test_feed_failure_reported_as_data_gap(self, make_event):
        faults = []
        feed = QueueFeedSource("flaky")
        feed.publish_nowait(make_event("A", 0))
        feed.fail("socket closed")
        bus = LiveEventBus([feed], horizon=0)
        bus.fault_handler = faults.append

        events = await asyncio.wait_for(collect(bus.subscribe(["A"])), timeout=2)

        assert len(events) == 1
        assert len(faults) == 1
        assert isinstance(faults[0], DataGapFault)

    @pytest.mark.asyncio
    async def test_bus_close_ends_infinite_stream(self):
        feed = QueueFeedSource()
        bus = LiveEventBus([feed], horizon=0)
        subscription = bus.subscribe(["A"])

        consumer = asyncio.create_task(collect(subscription))
        await asyncio.sleep(0.01)
        await bus.close()
        events = await asyncio.wait_for(consumer, timeout=2)

        assert events == []
        assert subscription.closed

    def test_requires_feed(self):
        with pytest.raises(ValueError):
            LiveEventBus([])

    def test_negative_horizon(self):
        with pytest.raises(ValueError):
            LiveEventBus([QueueFeedSource()], horizon=-1)

# tests/test_engine.py - Integration tests for the trading engine
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from autotrader.backtest.runner import BacktestRunner
from autotrader.backtest.simulated_backend import FillModel, SimulatedExecutionBackend
from autotrader.config.settings import load_settings
from autotrader.data_sources.event_bus import LiveEventBus, ReplayEventBus
from autotrader.data_sources.historical import InMemoryHistoricalSource
from autotrader.data_sources.live import QueueFeedSource
from autotrader.database.persistence import InMemoryPersistence, SqlAlchemyPersistence
from autotrader.models.trading import Account, MarketEvent, OrderState, RiskLimits
from autotrader.strategies.base import Strategy
from autotrader.strategies.trailing_stop import TrailingStop
from autotrader.trading.engine import TradingEngine
from autotrader.trading.execution_backend import (
    CancelAck, ExecutionBackend, ExecutionReport, ReportKind, SubmitAck,
)
from autotrader.trading.paper_backend import PaperBrokerBackend
from autotrader.utils.exceptions import LedgerInvariantViolation


class BuyOnce(Strategy):
    """Buys ``quantity`` on the first event it sees."""

    def __init__(self, quantity, strategy_id="buy_once"):
        super().__init__(strategy_id)
        self.quantity = quantity
        self.sent = False
        self.fills = []

    async def on_event(self, event):
        if self.sent:
            return []
        self.sent = True
        return [self.buy(event, self.quantity)]

    async def on_fill(self, order):
        await super().on_fill(order)
        self.fills.append(order.order_id)


class Crashing(Strategy):
    async def on_event(self, event):
        raise KeyError("missing indicator")


class OverfillBackend(ExecutionBackend):
    """Reports twice the ordered quantity."""

    def __init__(self):
        super().__init__()
        self.open = {}

    async def submit(self, order):
        self.open[order.order_id] = order
        return SubmitAck(order.order_id, True)

    async def cancel(self, order_id):
        return CancelAck(order_id, False, reason="unsupported")

    async def on_market_event(self, event):
        for order in list(self.open.values()):
            del self.open[order.order_id]
            await self._emit(ExecutionReport(
                order.order_id, ReportKind.FILL, event.timestamp,
                quantity=order.quantity * 2, price=event.price))


def flat_source(make_event, prices, symbol="X"):
    return InMemoryHistoricalSource(
        make_event(symbol, seconds, price) for seconds, price in enumerate(prices))


class TestBacktestEngine:
    """Test replay runs end to end."""

    @pytest.mark.asyncio
    async def test_partial_approval_fills_reduced_quantity(self, settings, make_event):
        strategy = BuyOnce(150)
        engine = TradingEngine(
            ReplayEventBus(flat_source(make_event, [10.0, 10.0, 10.0])),
            SimulatedExecutionBackend(FillModel(slippage_bps=0)),
            [strategy],
            account=Account(cash=10000.0),
            limits=RiskLimits(max_position_size=100),
            settings=settings,
        )

        final = await engine.run()

        decision = engine.decisions[0]
        assert decision.approved and decision.reduced
        assert decision.quantity == 100
        order = engine.order_manager.archive[0]
        assert order.state is OrderState.FILLED
        assert order.filled_quantity == 100
        assert order.avg_fill_price == 10.0
        assert final.position("X").quantity == 100
        assert final.cash == pytest.approx(9000.0)
        assert strategy.fills == [order.order_id]
        assert strategy.position == {"X": 100}

    @pytest.mark.asyncio
    async def test_strategy_fault_does_not_stop_run(self, settings, make_event):
        healthy = BuyOnce(10)
        engine = TradingEngine(
            ReplayEventBus(flat_source(make_event, [10.0, 10.5, 11.0])),
            SimulatedExecutionBackend(FillModel(slippage_bps=0)),
            [Crashing("crashing"), healthy],
            settings=settings,
        )

        final = await engine.run()

        assert engine.runtime.is_suspended("crashing")
        assert final.position("X").quantity == 10
        assert engine.events_processed == 3
        assert any(f['type'] == 'StrategyFault' for f in engine.tracker.faults)

    @pytest.mark.asyncio
    async def test_risk_rejection_reported(self, settings, make_event):
        engine = TradingEngine(
            ReplayEventBus(flat_source(make_event, [10.0, 10.0])),
            SimulatedExecutionBackend(),
            [BuyOnce(10)],
            limits=RiskLimits(max_exposure=5.0, quantity_step=1),
            settings=settings,
        )

        final = await engine.run()

        assert final.positions == {}
        assert engine.order_manager.archive == []
        assert [f['error_code'] for f in engine.tracker.faults] == ['risk_rejection']

    @pytest.mark.asyncio
    async def test_open_orders_cancelled_at_end_of_data(self, settings, make_event):
        class BidLow(BuyOnce):
            async def on_event(self, event):
                if self.sent:
                    return []
                self.sent = True
                return [self.buy(event, 10, limit_price=1.0)]

        engine = TradingEngine(
            ReplayEventBus(flat_source(make_event, [10.0, 10.0])),
            SimulatedExecutionBackend(),
            [BidLow(10)],
            settings=settings,
        )

        await engine.run()

        order = engine.order_manager.archive[0]
        assert order.state is OrderState.CANCELLED
        assert order.terminal_reason == "end_of_data"
        assert engine.order_manager.orders == {}

    @pytest.mark.asyncio
    async def test_ledger_violation_halts(self, settings, make_event):
        engine = TradingEngine(
            ReplayEventBus(flat_source(make_event, [10.0, 10.0, 10.0])),
            OverfillBackend(),
            [BuyOnce(10)],
            settings=settings,
        )

        with pytest.raises(LedgerInvariantViolation):
            await engine.run()

        assert engine.is_running is False
        assert engine.events_processed == 1
        assert engine.tracker.faults[-1]['fatal'] is True

    @pytest.mark.asyncio
    async def test_persistence_receives_orders_and_snapshots(self, settings, make_event):
        persistence = InMemoryPersistence()
        engine = TradingEngine(
            ReplayEventBus(flat_source(make_event, [10.0, 10.0])),
            SimulatedExecutionBackend(FillModel(slippage_bps=0)),
            [BuyOnce(10)],
            settings=settings,
            persistence=persistence,
        )

        await engine.run()

        assert [o['state'] for o in persistence.orders] == ['filled']
        assert persistence.snapshots[-1]['positions']['X']['quantity'] == 10
        assert persistence.load_account().positions['X'].quantity == 10

    def test_from_settings_backtest(self, settings, make_event):
        engine = TradingEngine.from_settings(
            settings, [BuyOnce(1)], source=flat_source(make_event, [10.0]))

        assert isinstance(engine.bus, ReplayEventBus)
        assert isinstance(engine.backend, SimulatedExecutionBackend)
        assert engine.backend.cash_provider() == settings.INITIAL_CASH
        assert engine.clock.replay is True

    def test_from_settings_requires_source(self, settings):
        with pytest.raises(ValueError):
            TradingEngine.from_settings(settings, [])


class TestBacktestRunner:
    """Test the backtest runner."""

    PRICES = [100.0, 101.0, 102.0, 105.0, 103.0, 99.0, 98.0, 100.0]

    @pytest.mark.asyncio
    async def test_identical_runs_are_identical(self, settings, make_event):
        runner = BacktestRunner(flat_source(make_event, self.PRICES), settings)

        first = await runner.run([TrailingStop({'stop_loss_pct': 0.05})])
        second = await runner.run([TrailingStop({'stop_loss_pct': 0.05})])

        assert first.to_json() == second.to_json()
        assert [o['intent']['side'] for o in first.orders] == ['buy', 'sell']
        assert first.final_snapshot.positions == {}

    @pytest.mark.asyncio
    async def test_result_contents(self, settings, make_event):
        runner = BacktestRunner(flat_source(make_event, self.PRICES), settings)

        result = await runner.run([TrailingStop({'stop_loss_pct': 0.05})], params={'run': 1})

        assert result.params == {'run': 1}
        assert len(result.equity_curve) >= len(self.PRICES)
        assert result.summary['total_orders'] == 2
        assert result.summary['fill_rate'] == 1.0
        assert result.summary['final_equity'] == pytest.approx(result.final_snapshot.equity)
        assert len(result.realized_trades) == 1
        assert result.realized_trades['profit'].sum() == pytest.approx(result.final_snapshot.realized_pnl)

    @pytest.mark.asyncio
    async def test_sweep(self, settings, make_event):
        runner = BacktestRunner(flat_source(make_event, self.PRICES), settings)

        frame = await runner.sweep(
            TrailingStop,
            {'stop_loss_pct': [0.02, 0.05], 'transaction_amount': [500, 1000]},
        )

        assert len(frame) == 4
        assert {'stop_loss_pct', 'transaction_amount', 'total_return'} <= set(frame.columns)

    def test_run_sync(self, settings, make_event):
        runner = BacktestRunner(flat_source(make_event, self.PRICES), settings,
                                fill_model=FillModel(slippage_bps=0))

        result = runner.run_sync([TrailingStop()])

        assert result.orders[0]['avg_fill_price'] == 101.0


class TestLiveEngine:
    """Test live runs against a paper broker."""

    def live_engine(self, settings, feed, strategies):
        return TradingEngine(
            LiveEventBus([feed], horizon=0),
            PaperBrokerBackend({'fill_delay': 0, 'slippage_bps': 0}),
            strategies,
            settings=settings,
        )

    @pytest.mark.asyncio
    async def test_paper_fill_completes_before_shutdown(self, settings, make_event):
        feed = QueueFeedSource()
        engine = self.live_engine(settings, feed, [BuyOnce(10)])
        task = asyncio.create_task(engine.run())

        await feed.publish(make_event("X", 0, 10.0))
        await feed.publish(make_event("X", 1, 10.0))
        feed.disconnect()
        final = await asyncio.wait_for(task, timeout=5)

        assert engine.clock.replay is False
        assert final.position("X").quantity == 10
        assert engine.order_manager.orders == {}

    @pytest.mark.asyncio
    async def test_aware_feed_timestamps_share_engine_time_base(self, settings):
        start = datetime(2024, 1, 2, 9, 30)
        feed = QueueFeedSource()
        engine = self.live_engine(settings, feed, [BuyOnce(10)])
        task = asyncio.create_task(engine.run())

        await feed.publish(MarketEvent("X", datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc), 10.0))
        await asyncio.sleep(0.05)
        await feed.publish(MarketEvent("X", datetime(2024, 1, 2, 9, 30, 1, tzinfo=timezone.utc), 10.5))
        await asyncio.sleep(0.05)
        feed.disconnect()
        final = await asyncio.wait_for(task, timeout=5)

        order = engine.order_manager.archive[0]
        fill_time = engine.ledger.fills[0]['timestamp']
        assert final.position("X").quantity == 10
        assert engine.clock.last_event_time == datetime(2024, 1, 2, 9, 30, 1)
        assert final.as_of >= datetime(2024, 1, 2, 9, 30, 1)
        assert final.as_of < datetime(2024, 1, 2, 9, 31)
        assert fill_time.tzinfo is None
        assert start <= fill_time <= start + timedelta(seconds=1)
        assert order.submitted_at <= order.first_fill_at

    @pytest.mark.asyncio
    async def test_out_of_order_event_dropped(self, settings, make_event):
        feed = QueueFeedSource()
        strategy = BuyOnce(1)
        engine = self.live_engine(settings, feed, [strategy])
        feed.publish_nowait(make_event("X", 5, 10.0))
        feed.publish_nowait(make_event("X", 1, 9.0))
        feed.disconnect()

        await asyncio.wait_for(engine.run(), timeout=5)

        assert engine.events_processed == 1
        assert engine.events_skipped == 1
        assert engine.ledger.prices["X"] == 10.0
        assert any(f['type'] == 'DataGapFault' for f in engine.tracker.faults)

    @pytest.mark.asyncio
    async def test_stop(self, settings, make_event):
        feed = QueueFeedSource()
        engine = self.live_engine(settings, feed, [])
        task = asyncio.create_task(engine.run())
        await feed.publish(make_event("X", 0, 10.0))
        await asyncio.sleep(0.05)

        await engine.stop()
        await asyncio.wait_for(task, timeout=5)

        assert engine.is_running is False
        assert engine.events_processed == 1

    def test_from_settings_live_restores_account(self, make_event):
        settings = load_settings(RUN_MODE="live")
        persistence = InMemoryPersistence()
        persistence.snapshots.append({
            'account_id': 'default',
            'cash': 4321.0,
            'realized_pnl': 12.0,
            'positions': {'X': {'quantity': 5, 'avg_entry_price': 10.0, 'last_price': 11.0}},
        })

        engine = TradingEngine.from_settings(
            settings, [], feeds=[QueueFeedSource()], persistence=persistence)

        assert isinstance(engine.backend, PaperBrokerBackend)
        assert engine.ledger.account.cash == 4321.0
        assert engine.ledger.account.positions['X'].quantity == 5
        assert engine.ledger.prices == {'X': 11.0}

    def test_from_settings_live_requires_feeds(self):
        with pytest.raises(ValueError):
            TradingEngine.from_settings(load_settings(RUN_MODE="live"), [])

    def test_from_settings_live_defaults_to_database_url(self):
        settings = load_settings(RUN_MODE="live", DATABASE_URL="sqlite:///:memory:", DEBUG=True)

        engine = TradingEngine.from_settings(settings, [], feeds=[QueueFeedSource()])

        assert isinstance(engine.persistence, SqlAlchemyPersistence)
        assert engine.persistence.db.database_url == "sqlite:///:memory:"
        assert engine.persistence.db.echo is True
        assert engine.persistence.account_id == settings.ACCOUNT_ID
        assert engine.ledger.account.cash == settings.INITIAL_CASH

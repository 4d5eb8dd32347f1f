# tests/test_performance.py - Performance tracking and metrics sink tests
from datetime import datetime, timedelta

import pytest
from prometheus_client import CollectorRegistry

from autotrader.models.trading import Account, AccountSnapshot, OrderSide, OrderState
from autotrader.monitoring.performance import (
    EquityPoint, OrderMetrics, PerformanceTracker, RealizedTrade,
)
from autotrader.monitoring.sinks import LoggingMetricsSink, MetricsSink, PrometheusMetricsSink
from autotrader.utils.exceptions import DataGapFault, LedgerInvariantViolation, RiskRejection


def filled_order(make_order, at, order_id=1, side=OrderSide.BUY, price=10.0, fill_price=10.02,
                 latency=0.5, strategy_id="test_strategy"):
    order = make_order(order_id=order_id, quantity=10, side=side, price=price,
                       strategy_id=strategy_id)
    order.submitted_at = at(0)
    order.first_fill_at = at(0) + timedelta(seconds=latency)
    order.filled_quantity = 10
    order.avg_fill_price = fill_price
    order.state = OrderState.FILLED
    return order


def snapshot(cash, version, as_of=None):
    return AccountSnapshot.of(Account(cash=cash), as_of=as_of, version=version)


class ExplodingSink(MetricsSink):
    def record_order(self, metrics):
        raise RuntimeError("sink down")

    def record_equity(self, point):
        raise RuntimeError("sink down")

    def record_fault(self, fault):
        raise RuntimeError("sink down")


class TestOrderMetrics:
    """Test per-order execution quality."""

    def test_buy_slippage_and_latency(self, make_order, at):
        metrics = OrderMetrics.from_order(filled_order(make_order, at))

        assert metrics.latency_seconds == pytest.approx(0.5)
        assert metrics.slippage == pytest.approx(0.02)
        assert metrics.slippage_bps == pytest.approx(20.0)
        assert metrics.state == 'filled'

    def test_sell_below_reference_is_cost(self, make_order, at):
        metrics = OrderMetrics.from_order(
            filled_order(make_order, at, side=OrderSide.SELL, fill_price=9.99))

        assert metrics.slippage_bps == pytest.approx(10.0)

    def test_unfilled_order_has_no_execution_metrics(self, make_order):
        order = make_order(state=OrderState.REJECTED)

        metrics = OrderMetrics.from_order(order)

        assert metrics.latency_seconds is None
        assert metrics.slippage_bps is None


class TestPerformanceTracker:
    """Test the read-only tracker."""

    def setup_method(self):
        self.tracker = PerformanceTracker(initial_equity=100.0)

    def test_drawdown(self, at):
        for version, equity in enumerate([100.0, 110.0, 99.0, 105.0, 120.0]):
            self.tracker.on_snapshot(snapshot(equity, version, at(version)))

        summary = self.tracker.summary()

        assert summary['max_drawdown'] == pytest.approx(0.1)
        assert summary['max_drawdown_duration'] == 2
        assert summary['final_equity'] == 120.0
        assert summary['total_return'] == pytest.approx(0.2)

    def test_order_summary(self, make_order, at):
        self.tracker.on_order(filled_order(make_order, at, order_id=1, latency=1.0))
        self.tracker.on_order(filled_order(make_order, at, order_id=2, latency=3.0, fill_price=10.0))
        self.tracker.on_order(make_order(order_id=3, state=OrderState.CANCELLED))

        summary = self.tracker.summary()

        assert summary['total_orders'] == 3
        assert summary['filled_orders'] == 2
        assert summary['fill_rate'] == pytest.approx(2 / 3)
        assert summary['mean_latency_seconds'] == pytest.approx(2.0)
        assert summary['mean_slippage_bps'] == pytest.approx(10.0)
        assert len(self.tracker.orders_frame()) == 3

    def test_empty_summary(self):
        summary = self.tracker.summary()

        assert summary['final_equity'] == 100.0
        assert summary['max_drawdown'] == 0.0
        assert summary['fill_rate'] == 0.0
        assert summary['mean_latency_seconds'] is None
        assert self.tracker.equity_frame().empty

    def test_equity_frame(self, at):
        self.tracker.on_snapshot(snapshot(100.0, 0, at(0)))
        self.tracker.on_snapshot(snapshot(101.0, 1, at(1)))

        frame = self.tracker.equity_frame()

        assert list(frame['equity']) == [100.0, 101.0]
        assert list(frame['version']) == [0, 1]

    def test_faults_are_structured(self, at):
        self.tracker.on_fault(RiskRejection("too big", rule="max_exposure"), at(3))
        self.tracker.on_fault(ValueError("odd"))

        first, second = self.tracker.faults
        assert first['error_code'] == 'risk_rejection'
        assert first['details']['rule'] == 'max_exposure'
        assert first['timestamp'] == at(3).isoformat()
        assert second['error_code'] == 'unexpected_error'
        assert self.tracker.summary()['faults'] == 2

    def test_sink_failure_is_swallowed(self, make_order, at):
        tracker = PerformanceTracker(100.0, sink=ExplodingSink())

        tracker.on_order(filled_order(make_order, at))
        tracker.on_snapshot(snapshot(100.0, 0))
        tracker.on_fault(DataGapFault("feed lost"))

        # Metrics are kept even though the sink failed
        assert len(tracker.order_metrics) == 1
        assert len(tracker.equity_curve) == 1


class TestMetricsSinks:
    """Test logging and Prometheus sinks."""

    def test_logging_sink_counts_faults(self, make_order, at):
        sink = LoggingMetricsSink()
        tracker = PerformanceTracker(100.0, sink=sink)

        tracker.on_order(filled_order(make_order, at))
        tracker.on_fault(LedgerInvariantViolation("overfill"))

        assert sink.faults == 1

    def test_prometheus_sink(self, make_order, at):
        registry = CollectorRegistry()
        tracker = PerformanceTracker(100.0, sink=PrometheusMetricsSink(registry=registry))

        tracker.on_order(filled_order(make_order, at, latency=0.05))
        tracker.on_snapshot(snapshot(99.5, 1))
        tracker.on_fault(RiskRejection("rate", rule="max_order_rate", retryable=True))

        assert registry.get_sample_value(
            'autotrader_orders_total',
            {'strategy': 'test_strategy', 'symbol': 'X', 'state': 'filled'}) == 1.0
        assert registry.get_sample_value(
            'autotrader_order_latency_seconds_count', {'strategy': 'test_strategy'}) == 1.0
        assert registry.get_sample_value('autotrader_equity') == 99.5
        assert registry.get_sample_value('autotrader_cash') == 99.5
        assert registry.get_sample_value(
            'autotrader_faults_total',
            {'type': 'RiskRejection', 'error_code': 'risk_rejection_retryable'}) == 1.0

    def test_prometheus_sinks_do_not_collide(self):
        PrometheusMetricsSink()
        PrometheusMetricsSink()

    def test_equity_point(self, at):
        point = EquityPoint.from_snapshot(snapshot(50.0, 4, at(2)))

        assert point.equity == 50.0
        assert point.version == 4
        assert point.timestamp == at(2)


def closing_order(make_order, order_id, side, quantity, price, when, strategy_id="test_strategy"):
    order = make_order(order_id=order_id, quantity=quantity, side=side, price=price,
                       strategy_id=strategy_id)
    order.filled_quantity = quantity
    order.avg_fill_price = price
    order.state = OrderState.FILLED
    order.terminal_at = when
    return order


def realized(symbol, profit, when, quantity=1.0):
    return RealizedTrade(symbol, "s", "long", 10.0, 10.0 + profit / quantity, quantity,
                         profit, profit * 10.0, when)


class TestRealizedTrades:
    """Test realized trade matching and period rollups."""

    def setup_method(self):
        self.tracker = PerformanceTracker(10000.0)

    def test_long_round_trip(self, make_order, at):
        self.tracker.on_order(closing_order(make_order, 1, OrderSide.BUY, 10, 10.0, at(0)))
        self.tracker.on_order(closing_order(make_order, 2, OrderSide.SELL, 10, 12.0, at(5)))

        [trade] = self.tracker.realized_trades
        assert trade.direction == 'long'
        assert trade.profit == pytest.approx(20.0)
        assert trade.profit_pct == pytest.approx(20.0)
        assert trade.timestamp == at(5)
        assert self.tracker.summary()['realized_trades'] == 1

    def test_short_round_trip(self, make_order, at):
        self.tracker.on_order(closing_order(make_order, 1, OrderSide.SELL, 5, 20.0, at(0)))
        self.tracker.on_order(closing_order(make_order, 2, OrderSide.BUY, 5, 18.0, at(1)))

        [trade] = self.tracker.realized_trades
        assert trade.direction == 'short'
        assert trade.profit == pytest.approx(10.0)
        assert trade.profit_pct == pytest.approx(10.0)

    def test_crossing_zero_opens_other_side(self, make_order, at):
        self.tracker.on_order(closing_order(make_order, 1, OrderSide.BUY, 10, 10.0, at(0)))
        self.tracker.on_order(closing_order(make_order, 2, OrderSide.SELL, 15, 11.0, at(1)))
        self.tracker.on_order(closing_order(make_order, 3, OrderSide.BUY, 5, 10.0, at(2)))

        long_trade, short_trade = self.tracker.realized_trades
        assert (long_trade.direction, long_trade.quantity) == ('long', 10)
        assert long_trade.profit == pytest.approx(10.0)
        assert (short_trade.direction, short_trade.quantity) == ('short', 5)
        assert short_trade.entry_price == 11.0
        assert short_trade.profit == pytest.approx(5.0)

    def test_unfilled_orders_ignored(self, make_order):
        self.tracker.on_order(make_order(state=OrderState.CANCELLED))

        assert self.tracker.realized_trades == []
        assert self.tracker.realized_frame().empty

    def test_summary_by_period(self):
        self.tracker.realized_trades.extend([
            realized("A", 10.0, datetime(2024, 1, 1, 10)),
            realized("A", -4.0, datetime(2024, 1, 7, 23)),
            realized("B", 6.0, datetime(2024, 1, 8, 1)),
            realized("B", 3.0, datetime(2024, 2, 1, 12)),
            # ISO week of 2023-01-01 belongs to 2022
            realized("C", 1.0, datetime(2023, 1, 1, 12)),
        ])

        daily = self.tracker.realized_summary('day')
        weekly = self.tracker.realized_summary('week')
        monthly = self.tracker.realized_summary('month')

        assert len(daily) == 5
        assert daily.loc['2024-01-07', 'profit'] == pytest.approx(-4.0)
        assert weekly['profit'].to_dict() == pytest.approx({
            '2022-W52': 1.0, '2024-W01': 6.0, '2024-W02': 6.0, '2024-W05': 3.0})
        assert weekly.loc['2024-W01', 'trades'] == 2
        assert monthly['profit'].to_dict() == pytest.approx({
            '2023-01': 1.0, '2024-01': 12.0, '2024-02': 3.0})
        assert monthly.loc['2024-01', 'quantity'] == pytest.approx(3.0)

    def test_summary_unknown_period(self):
        with pytest.raises(ValueError):
            self.tracker.realized_summary('year')

    def test_empty_summary(self):
        summary = self.tracker.realized_summary('week')

        assert summary.empty
        assert list(summary.columns) == ['profit', 'quantity', 'trades']

    def test_report_by_symbol(self):
        self.tracker.realized_trades.extend([
            realized("A", 10.0, datetime(2024, 1, 1)),
            realized("A", -4.0, datetime(2024, 1, 2)),
            realized("B", -6.0, datetime(2024, 1, 3)),
        ])

        report = self.tracker.realized_report()

        assert report['realized_trades'] == 3
        assert report['realized_profit'] == pytest.approx(0.0)
        assert report['by_symbol'] == pytest.approx({'A': 6.0, 'B': -6.0})
        assert report['best_symbol'] == 'A'
        assert report['worst_symbol'] == 'B'
        assert report['symbol_win_ratio'] == pytest.approx(0.5)

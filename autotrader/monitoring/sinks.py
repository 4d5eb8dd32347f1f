# autotrader/monitoring/sinks.py - Metrics sinks for order, equity and fault events
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


class MetricsSink(ABC):
    """Destination for engine metrics."""

    @abstractmethod
    def record_order(self, metrics) -> None:
        """Record metrics for one terminal order.

        Args:
            metrics: OrderMetrics of the order
        """
        pass

    @abstractmethod
    def record_equity(self, point) -> None:
        """Record one equity curve point.

        Args:
            point: EquityPoint
        """
        pass

    @abstractmethod
    def record_fault(self, fault: Dict[str, Any]) -> None:
        """Record a structured fault event (see ``fault_event``)."""
        pass


class LoggingMetricsSink(MetricsSink):
    """Writes metrics to the log."""

    def __init__(self, equity_level: int = logging.DEBUG):
        self.equity_level = equity_level
        self.faults = 0

    def record_order(self, metrics) -> None:
        logger.info(
            f"Order {metrics.order_id} {metrics.state} {metrics.side} {metrics.filled_quantity}/"
            f"{metrics.quantity} {metrics.symbol} latency={_fmt(metrics.latency_seconds, 's')} "
            f"slippage={_fmt(metrics.slippage_bps, 'bps')}"
        )

    def record_equity(self, point) -> None:
        logger.log(
            self.equity_level,
            f"Equity {point.equity:.2f} cash={point.cash:.2f} "
            f"realized={point.realized_pnl:.2f} unrealized={point.unrealized_pnl:.2f}"
        )

    def record_fault(self, fault: Dict[str, Any]) -> None:
        self.faults += 1
        level = logging.CRITICAL if fault.get('fatal') else logging.WARNING
        logger.log(level, f"Fault {fault['type']} [{fault['error_code']}]: {fault['message']}")


class PrometheusMetricsSink(MetricsSink):
    """Exports engine metrics through prometheus_client.

    A private registry is used unless one is passed, so several engines (or
    tests) can coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "autotrader"):
        self.registry = registry or CollectorRegistry()

        self.orders_total = Counter(
            f'{namespace}_orders_total',
            'Terminal orders',
            ['strategy', 'symbol', 'state'],
            registry=self.registry,
        )

        self.order_latency = Histogram(
            f'{namespace}_order_latency_seconds',
            'Submit to first fill latency in seconds',
            ['strategy'],
            buckets=[0.001, 0.01, 0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 300.0],
            registry=self.registry,
        )

        self.order_slippage = Histogram(
            f'{namespace}_order_slippage_bps',
            'Execution slippage in basis points, positive is cost',
            ['strategy'],
            buckets=[-50, -10, -1, 0, 1, 5, 10, 25, 50, 100],
            registry=self.registry,
        )

        self.equity = Gauge(
            f'{namespace}_equity',
            'Account equity',
            registry=self.registry,
        )

        self.cash = Gauge(
            f'{namespace}_cash',
            'Account cash balance',
            registry=self.registry,
        )

        self.realized_pnl = Gauge(
            f'{namespace}_realized_pnl',
            'Realized PnL total',
            registry=self.registry,
        )

        self.faults_total = Counter(
            f'{namespace}_faults_total',
            'Faults by type',
            ['type', 'error_code'],
            registry=self.registry,
        )

    def record_order(self, metrics) -> None:
        self.orders_total.labels(
            strategy=metrics.strategy_id, symbol=metrics.symbol, state=metrics.state).inc()
        if metrics.latency_seconds is not None:
            self.order_latency.labels(strategy=metrics.strategy_id).observe(metrics.latency_seconds)
        if metrics.slippage_bps is not None:
            self.order_slippage.labels(strategy=metrics.strategy_id).observe(metrics.slippage_bps)

    def record_equity(self, point) -> None:
        self.equity.set(point.equity)
        self.cash.set(point.cash)
        self.realized_pnl.set(point.realized_pnl)

    def record_fault(self, fault: Dict[str, Any]) -> None:
        self.faults_total.labels(type=fault['type'], error_code=fault['error_code']).inc()


def _fmt(value: Optional[float], unit: str) -> str:
    return f"{value:.4f}{unit}" if value is not None else "n/a"

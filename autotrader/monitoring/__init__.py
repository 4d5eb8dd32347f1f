# autotrader/monitoring/__init__.py
from autotrader.monitoring.performance import EquityPoint, OrderMetrics, PerformanceTracker
from autotrader.monitoring.sinks import LoggingMetricsSink, MetricsSink, PrometheusMetricsSink

__all__ = [
    "EquityPoint",
    "OrderMetrics",
    "PerformanceTracker",
    "LoggingMetricsSink",
    "MetricsSink",
    "PrometheusMetricsSink",
]

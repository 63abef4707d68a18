"""Metrics for table runs and data quality, exported through OpenTelemetry."""

from liveflow.monitoring.metrics import MetricsCollector, TableMetrics

__all__ = [
    "MetricsCollector",
    "TableMetrics",
]

"""Metrics collection for pipeline runs.

Table outcomes and batch quality are exported through OpenTelemetry
instruments and kept in memory for run summaries.
"""

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from opentelemetry.metrics import CallbackOptions, Observation

from liveflow.__version__ import __version__
from liveflow.constants import TableRunStatus
from liveflow.logging import get_logger
from liveflow.observability.context import sanitize_extras
from liveflow.settings import LiveFlowSettings
from liveflow.telemetry import INSTRUMENTATION_NAME, get_meter
from liveflow.types.results import QualityReport, TableRunResult


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TableMetrics:
    """Metrics of one table within one pipeline run.

    Attributes:
        pipeline: Pipeline name
        run_id: Run that processed the table
        table_name: Table processed
        status: Final table status
        rows_written: Rows committed
        rows_dropped: Rows removed by DROP expectations
        expectation_violations: Violations counted over all expectations
        duration_seconds: Time spent on the table, retries included
        attempts: Attempts made
        layer: Optional bronze/silver/gold label
        error_code: Error code when the table did not succeed
        timestamp: When the outcome was recorded
    """

    pipeline: str
    run_id: str
    table_name: str
    status: str
    rows_written: int
    rows_dropped: int
    expectation_violations: int
    duration_seconds: float
    attempts: int = 1
    layer: Optional[str] = None
    error_code: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def success(self) -> bool:
        return TableRunStatus(self.status).is_healthy

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class MetricsCollector:
    """Collector for table run and data quality metrics.

    Attributes:
        settings: Settings providing the environment label
        meter: OpenTelemetry meter
    """

    def __init__(self, settings: Optional[LiveFlowSettings] = None):
        self.settings = settings
        self.logger = get_logger(__name__)
        self._lock = threading.Lock()
        self._metrics: List[TableMetrics] = []
        self.meter = get_meter(INSTRUMENTATION_NAME, __version__)
        self._setup_instruments()

    @property
    def environment(self) -> str:
        return self.settings.environment if self.settings is not None else "unknown"

    def _setup_instruments(self) -> None:
        self.table_run_counter = self.meter.create_counter(
            "liveflow_table_runs_total",
            description="Table runs by final status",
            unit="runs"
        )
        self.rows_written_counter = self.meter.create_counter(
            "liveflow_rows_written_total",
            description="Rows committed to live tables",
            unit="rows"
        )
        self.rows_dropped_counter = self.meter.create_counter(
            "liveflow_rows_dropped_total",
            description="Rows removed by DROP expectations",
            unit="rows"
        )
        self.violation_counter = self.meter.create_counter(
            "liveflow_expectation_violations_total",
            description="Rows violating an expectation",
            unit="rows"
        )
        self.duration_histogram = self.meter.create_histogram(
            "liveflow_table_duration_seconds",
            description="Duration of table runs",
            unit="seconds"
        )
        self.meter.create_observable_gauge(
            "liveflow_table_success_rate",
            callbacks=[self._success_rate_callback],
            description="Share of healthy table runs in the last hour",
            unit="ratio"
        )

    def record_quality(self, report: QualityReport) -> None:
        """Export the expectation counts of one batch."""
        for result in report.expectations.values():
            if result.rows_violated:
                self.violation_counter.add(result.rows_violated, {
                    "table": report.table_name,
                    "expectation": result.name,
                    "policy": str(result.policy),
                })
        if report.dropped_rows:
            self.rows_dropped_counter.add(report.dropped_rows, {"table": report.table_name})

    def record_table_run(
        self,
        result: TableRunResult,
        *,
        pipeline: str,
        run_id: str,
        layer: Optional[str] = None,
    ) -> TableMetrics:
        """Record the final outcome of a table in a run."""
        quality = result.quality
        metrics = TableMetrics(
            pipeline=pipeline,
            run_id=run_id,
            table_name=result.table_name,
            status=TableRunStatus(result.status).value,
            rows_written=result.rows_written,
            rows_dropped=quality.dropped_rows if quality else 0,
            expectation_violations=sum(r.rows_violated for r in quality.expectations.values()) if quality else 0,
            duration_seconds=result.duration_seconds,
            attempts=result.attempts,
            layer=layer,
            error_code=(result.error or {}).get("error_code"),
        )
        with self._lock:
            self._metrics.append(metrics)

        attributes = {
            "pipeline": pipeline,
            "table": metrics.table_name,
            "status": metrics.status,
            "layer": layer or "none",
        }
        self.table_run_counter.add(1, attributes)
        if metrics.rows_written:
            self.rows_written_counter.add(metrics.rows_written, attributes)
        self.duration_histogram.record(metrics.duration_seconds, attributes)

        self.logger.info("metrics.table_run.recorded", extra=sanitize_extras(metrics.to_dict()))
        return metrics

    def _success_rate_callback(self, options: CallbackOptions) -> Iterable[Observation]:
        cutoff = _utcnow() - timedelta(hours=1)
        with self._lock:
            recent = [m for m in self._metrics if m.timestamp > cutoff]
        rate = sum(1 for m in recent if m.success) / len(recent) if recent else 1.0
        yield Observation(rate, {"environment": self.environment})

    def get_metrics(self, run_id: Optional[str] = None) -> List[TableMetrics]:
        with self._lock:
            return [m for m in self._metrics if run_id is None or m.run_id == run_id]

    def get_summary(self, run_id: Optional[str] = None) -> Dict[str, Any]:
        """Summary over all recorded table runs, or over one run."""
        metrics = self.get_metrics(run_id)
        if not metrics:
            return {
                "total_tables": 0,
                "healthy_tables": 0,
                "unhealthy_tables": 0,
                "success_rate": 0.0,
                "rows_written": 0,
                "rows_dropped": 0,
                "expectation_violations": 0,
                "total_duration_seconds": 0.0,
            }

        healthy = [m for m in metrics if m.success]
        by_status: Dict[str, int] = {}
        for m in metrics:
            by_status[m.status] = by_status.get(m.status, 0) + 1

        return {
            "total_tables": len(metrics),
            "healthy_tables": len(healthy),
            "unhealthy_tables": len(metrics) - len(healthy),
            "success_rate": len(healthy) / len(metrics),
            "rows_written": sum(m.rows_written for m in metrics),
            "rows_dropped": sum(m.rows_dropped for m in metrics),
            "expectation_violations": sum(m.expectation_violations for m in metrics),
            "total_duration_seconds": sum(m.duration_seconds for m in metrics),
            "tables_by_status": by_status,
        }

    def clear(self) -> None:
        with self._lock:
            self._metrics = []

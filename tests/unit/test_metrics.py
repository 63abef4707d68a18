"""Unit tests for the metrics collector."""

from datetime import datetime, timedelta, timezone

import pytest

from liveflow.constants import TableRunStatus, ViolationPolicy
from liveflow.monitoring import MetricsCollector
from liveflow.monitoring.metrics import TableMetrics
from liveflow.types.results import ExpectationResult, QualityReport, TableRunResult


@pytest.fixture
def report():
    return QualityReport(
        table_name="cleaned_new_txs",
        rows_in=5,
        rows_out=3,
        expectations={
            "positive": ExpectationResult(name="positive", policy=ViolationPolicy.DROP, rows_violated=2),
            "known": ExpectationResult(name="known", policy=ViolationPolicy.WARN, rows_violated=1),
        },
    )


class TestMetricsCollector:
    """Test recording and summaries."""

    def test_record_table_run(self, metrics, report):
        recorded = metrics.record_table_run(
            TableRunResult(
                table_name="cleaned_new_txs",
                status=TableRunStatus.SUCCEEDED,
                rows_written=3,
                quality=report,
                attempts=1,
            ),
            pipeline="loans",
            run_id="run-1",
            layer="silver",
        )

        assert recorded.status == "succeeded"
        assert recorded.rows_dropped == 2
        assert recorded.expectation_violations == 3
        assert recorded.success
        assert recorded.to_dict()["layer"] == "silver"

    def test_summary_by_run(self, metrics):
        metrics.record_table_run(
            TableRunResult(table_name="raw_txs", status=TableRunStatus.SUCCEEDED, rows_written=10),
            pipeline="loans", run_id="run-1",
        )
        metrics.record_table_run(
            TableRunResult(
                table_name="cleaned_new_txs",
                status=TableRunStatus.FAILED,
                error={"error_code": "DATA_001"},
            ),
            pipeline="loans", run_id="run-1",
        )
        metrics.record_table_run(
            TableRunResult(table_name="raw_txs", status=TableRunStatus.NO_NEW_DATA),
            pipeline="loans", run_id="run-2",
        )

        summary = metrics.get_summary("run-1")

        assert summary["total_tables"] == 2
        assert summary["healthy_tables"] == 1
        assert summary["success_rate"] == 0.5
        assert summary["rows_written"] == 10
        assert summary["tables_by_status"] == {"succeeded": 1, "failed": 1}
        assert metrics.get_metrics("run-1")[1].error_code == "DATA_001"
        assert metrics.get_summary()["total_tables"] == 3

    def test_empty_summary(self):
        summary = MetricsCollector().get_summary("nothing")

        assert summary["total_tables"] == 0
        assert summary["success_rate"] == 0.0

    def test_success_rate_gauge_uses_recent_runs(self, metrics):
        old = TableMetrics(
            pipeline="loans", run_id="old", table_name="raw_txs", status="failed",
            rows_written=0, rows_dropped=0, expectation_violations=0, duration_seconds=0.0,
            timestamp=datetime.now(timezone.utc) - timedelta(hours=2),
        )
        metrics._metrics.append(old)
        metrics.record_table_run(
            TableRunResult(table_name="raw_txs", status=TableRunStatus.UP_TO_DATE),
            pipeline="loans", run_id="new",
        )

        observations = list(metrics._success_rate_callback(None))

        assert observations[0].value == 1.0
        assert observations[0].attributes == {"environment": "dev"}

    def test_record_quality_and_clear(self, metrics, report):
        metrics.record_quality(report)
        metrics.record_table_run(
            TableRunResult(table_name="x", status=TableRunStatus.SKIPPED), pipeline="p", run_id="r",
        )

        metrics.clear()

        assert metrics.get_metrics() == []

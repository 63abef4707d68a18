"""Shared fixtures for liveflow tests."""

from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
import pytest

from liveflow.constants import TableRunStatus
from liveflow.monitoring import MetricsCollector
from liveflow.pipeline import (
    Aggregate,
    FrameSnapshotSource,
    InMemoryLandingZone,
    InnerJoin,
    PipelineDefinition,
    expect_or_drop,
    expect_or_fail,
    live,
    stream,
)
from liveflow.settings import ExecutionSettings, LiveFlowSettings
from liveflow.storage import InMemoryTableStore, SQLTableStore


@pytest.fixture(autouse=True)
def reset_settings_singleton(monkeypatch):
    """Every test starts without a cached settings instance."""
    monkeypatch.setattr("liveflow.settings.main._settings", None)


def make_settings(**execution: Any) -> LiveFlowSettings:
    options = {"max_workers": 2, "max_retries": 2, "retry_delay_seconds": 0.0}
    options.update(execution)
    return LiveFlowSettings(execution=ExecutionSettings(**options))


@pytest.fixture
def settings() -> LiveFlowSettings:
    return make_settings()


@pytest.fixture
def memory_store() -> InMemoryTableStore:
    return InMemoryTableStore()


@pytest.fixture
def sql_store() -> SQLTableStore:
    return SQLTableStore("sqlite://")


@pytest.fixture(params=["memory", "sql"])
def table_store(request):
    """Each store implementation in turn."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def metrics(settings) -> MetricsCollector:
    return MetricsCollector(settings)


@pytest.fixture
def make_transactions():
    """Build transaction records: (id, accounting_treatment_id, balance, cost_center_code)."""

    def _make(rows: Iterable[tuple]) -> List[Dict[str, Any]]:
        return [
            {
                "id": txn_id,
                "accounting_treatment_id": treatment_id,
                "balance": balance,
                "cost_center_code": cost_center,
            }
            for txn_id, treatment_id, balance, cost_center in rows
        ]

    return _make


@pytest.fixture
def landing_zone() -> InMemoryLandingZone:
    return InMemoryLandingZone("txs")


@pytest.fixture
def reference() -> FrameSnapshotSource:
    return FrameSnapshotSource(
        pd.DataFrame({"id": [0, 1], "accounting_treatment": ["amortised_cost", "fair_value"]}),
        name="ref",
    )


@pytest.fixture
def loans_pipeline(landing_zone, reference) -> PipelineDefinition:
    """raw_txs + ref -> cleaned_new_txs (stream join, DROP and FAIL rules) -> balances_by_cost_center."""
    pipeline = PipelineDefinition("loans_test", dialect="spark")

    @pipeline.table
    def raw_txs():
        return landing_zone

    @pipeline.table
    def ref_accounting_treatment():
        return reference

    @pipeline.table
    @expect_or_drop("Balance should be positive", "balance > 0")
    @expect_or_fail("Cost center must be specified", "cost_center_code IS NOT NULL")
    def cleaned_new_txs():
        return InnerJoin(
            left=stream("raw_txs"),
            right=live("ref_accounting_treatment"),
            left_on="accounting_treatment_id",
            right_on="id",
            right_columns={"accounting_treatment": "accounting_treatment"},
        )

    @pipeline.table
    def balances_by_cost_center():
        return Aggregate(
            source=live("cleaned_new_txs"),
            group_by=["cost_center_code"],
            aggregations={"bal": ("sum", "balance")},
        )

    return pipeline


def statuses(result) -> Dict[str, str]:
    return {name: TableRunStatus(table.status).value for name, table in result.tables.items()}


def read_column(store, table: str, column: str, sort_by: Optional[str] = None) -> list:
    frame = store.read(table)
    if sort_by is not None:
        frame = frame.sort_values(sort_by)
    return frame[column].tolist()

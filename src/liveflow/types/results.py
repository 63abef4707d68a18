"""Result models for expectations, table runs and pipeline runs."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from liveflow.constants import ExpectationAction, TableRunStatus, ViolationPolicy
from liveflow.types.base import LiveFlowBaseModel


class ExpectationResult(LiveFlowBaseModel):
    """Outcome of one expectation over one batch."""

    name: str
    policy: ViolationPolicy
    rows_checked: int = 0
    rows_violated: int = 0
    action: ExpectationAction = ExpectationAction.NONE

    @property
    def passed(self) -> bool:
        return self.rows_violated == 0


class QualityReport(LiveFlowBaseModel):
    """Per-batch data quality report of a table.

    Attributes:
        table_name: Table the batch was written to
        rows_in: Rows produced by the transformation
        rows_out: Rows remaining after DROP expectations
        expectations: Expectation name to its result, in declaration order
    """

    table_name: str
    rows_in: int = 0
    rows_out: int = 0
    expectations: Dict[str, ExpectationResult] = Field(default_factory=dict)

    @property
    def dropped_rows(self) -> int:
        return self.rows_in - self.rows_out

    def violations_for(self, name: str) -> int:
        result = self.expectations.get(name)
        return result.rows_violated if result else 0


class TableRunResult(LiveFlowBaseModel):
    """Outcome of one table within a pipeline run."""

    table_name: str
    status: TableRunStatus
    rows_written: int = 0
    quality: Optional[QualityReport] = None
    commit_version: Optional[int] = None
    error: Optional[Dict[str, Any]] = None
    skipped_because: List[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return TableRunStatus(self.status).is_healthy


class PipelineRunResult(LiveFlowBaseModel):
    """Outcome of a pipeline run, keyed by table name in execution order."""

    run_id: str
    pipeline_name: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    tables: Dict[str, TableRunResult] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return all(result.succeeded for result in self.tables.values())

    @property
    def failed_tables(self) -> List[str]:
        failed = {TableRunStatus.FAILED, TableRunStatus.TIMED_OUT, TableRunStatus.CANCELLED}
        return [name for name, result in self.tables.items() if TableRunStatus(result.status) in failed]

    @property
    def skipped_tables(self) -> List[str]:
        return [
            name for name, result in self.tables.items()
            if TableRunStatus(result.status) == TableRunStatus.SKIPPED
        ]

    def status_of(self, table_name: str) -> TableRunStatus:
        return TableRunStatus(self.tables[table_name].status)

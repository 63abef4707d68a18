"""Table store contract.

A table store keeps the rows, commit log and checkpoint of every live
table. A commit writes rows and the advanced checkpoint atomically: readers
either see both or neither. Append-only tables expose their rows as
ordered slices addressed by row offset, which is what incremental readers
consume; replaced tables keep a bounded history of versions for
point-in-time reads.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional

import pandas as pd
from pydantic import Field

from liveflow.common.exceptions import (
    CommitConflictError,
    ErrorCode,
    LiveFlowError,
    RunCancelledError,
)
from liveflow.constants import TableKind, WriteMode
from liveflow.types.base import LiveFlowBaseModel
from liveflow.types.checkpoint import Checkpoint

CommitGuard = Callable[[], bool]


class CommitSlice(NamedTuple):
    """Rows appended by one commit: its sequence number, first row offset and data."""

    seq: int
    start_offset: int
    frame: pd.DataFrame


class CommitRequest(LiveFlowBaseModel):
    """Everything written by one atomic commit.

    Attributes:
        table_name: Target table
        mode: Append rows or replace the table content
        frame: Rows to write
        checkpoint: Checkpoint to store with the rows; its version must be
            ``base_version + 1``
        commit_id: Deterministic id; committing the same id twice is a no-op
        base_version: Table version the writer read before computing the rows
        run_id: Pipeline run that produced the commit
    """

    table_name: str
    mode: WriteMode
    frame: pd.DataFrame
    checkpoint: Checkpoint
    commit_id: str
    base_version: int = Field(ge=0)
    run_id: Optional[str] = None


class CommitInfo(LiveFlowBaseModel):
    """Entry of a table's commit log."""

    table_name: str
    version: int
    seq: int
    mode: WriteMode
    row_count: int
    start_offset: int = 0
    commit_id: str
    run_id: Optional[str] = None
    committed_at: datetime
    columns: List[str] = Field(default_factory=list)


class TableStore(ABC):
    """Abstract storage collaborator for live tables.

    Args:
        history_retention_versions: Versions of replaced tables kept readable
            for point-in-time reads
    """

    def __init__(self, history_retention_versions: int = 10):
        self.history_retention_versions = history_retention_versions

    @abstractmethod
    def register_table(
        self,
        name: str,
        kind: TableKind,
        properties: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Record a table and its opaque layout hints; idempotent."""

    @abstractmethod
    def tables(self) -> List[str]:
        """Names of all registered tables."""

    @abstractmethod
    def properties(self, name: str) -> Dict[str, str]:
        """Layout hints recorded for a table."""

    @abstractmethod
    def get_checkpoint(self, name: str) -> Optional[Checkpoint]:
        """Checkpoint of the latest commit, or None before the first commit."""

    @abstractmethod
    def history(self, name: str) -> List[CommitInfo]:
        """Commit log of a table, oldest first."""

    @abstractmethod
    def row_count(self, name: str) -> int:
        """Rows ever appended (append-only tables) or rows of the current version."""

    @abstractmethod
    def read(self, name: str, as_of_seq: Optional[int] = None) -> pd.DataFrame:
        """Current content, or the content visible at commit sequence ``as_of_seq``.

        Raises:
            CheckpointGapError: If the requested version was pruned
        """

    @abstractmethod
    def read_since(self, name: str, offset: int) -> List[CommitSlice]:
        """Slices of an append-only table holding rows at or after ``offset``."""

    @abstractmethod
    def commit(self, request: CommitRequest, guard: Optional[CommitGuard] = None) -> CommitInfo:
        """Atomically write rows and checkpoint.

        Raises:
            CommitConflictError: If the table moved past ``request.base_version``
            RunCancelledError: If ``guard`` returns False before writing
        """

    @abstractmethod
    def reset(self, name: str) -> None:
        """Drop a table's rows, history and checkpoint (explicit full refresh)."""

    def current_version(self, name: str) -> int:
        commits = self.history(name)
        return commits[-1].version if commits else 0

    def schema(self, name: str) -> Optional[List[str]]:
        """Columns of the latest commit, or None before the first commit."""
        commits = self.history(name)
        return list(commits[-1].columns) if commits else None

    def _check_commit(
        self,
        request: CommitRequest,
        current_version: int,
        guard: Optional[CommitGuard],
    ) -> None:
        """Validation shared by all stores, run while holding the commit lock."""
        if request.base_version != current_version:
            raise CommitConflictError(request.table_name, request.base_version, current_version)
        if request.checkpoint.version != current_version + 1:
            raise LiveFlowError(
                f"Checkpoint version {request.checkpoint.version} does not follow "
                f"version {current_version} of '{request.table_name}'",
                error_code=ErrorCode.COMMIT_ERROR,
                details={"table": request.table_name},
            )
        if guard is not None and not guard():
            raise RunCancelledError(request.table_name)


def table_not_found(name: str) -> LiveFlowError:
    return LiveFlowError(
        f"Table '{name}' is not registered with the store",
        error_code=ErrorCode.TABLE_NOT_FOUND,
        details={"table": name},
    )

"""Materialization of one live table.

A table run loads the table's checkpoint, resolves the inputs it has not
seen yet, checks schemas, applies the transformation and expectations and
commits rows plus the advanced checkpoint in one atomic store commit:

    - SOURCE tables ingest new landing batches (append) or a changed
      reference snapshot (replace)
    - INCREMENTAL tables transform the rows appended upstream since their
      checkpoint, joined against reference snapshots (append)
    - FULL_REFRESH and AGGREGATE tables recompute from full upstream content
      whenever an upstream version changed (replace)

Nothing is written when any step fails; the next run starts again from the
unchanged checkpoint.
"""

import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from liveflow.common.exceptions import ErrorCode, LiveFlowError, SchemaMismatchError
from liveflow.constants import JoinSnapshotPolicy, MaterializationMode, TableKind, TableRunStatus
from liveflow.logging import get_logger
from liveflow.monitoring import MetricsCollector
from liveflow.observability.context import sanitize_extras
from liveflow.pipeline.definition import SCHEMA_HINT_TYPES, TableDefinition
from liveflow.pipeline.expectations import ExpectationEngine
from liveflow.pipeline.resolver import is_stale
from liveflow.pipeline.tracker import IncrementalTracker, snapshot_fingerprint
from liveflow.settings import LiveFlowSettings, get_settings
from liveflow.storage.base import CommitGuard, CommitRequest, CommitSlice, TableStore
from liveflow.types.checkpoint import Checkpoint
from liveflow.types.results import QualityReport, TableRunResult
from liveflow.utils.decorators import traced

logger = get_logger(__name__)

_TRUE_STRINGS = {"true", "t", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "f", "no", "n", "0"}


class _Batch:
    """Output of the read and transform steps, ready for expectations and commit."""

    def __init__(
        self,
        frame: pd.DataFrame,
        positions: Dict[str, Any],
        consumed_batches: Optional[List[str]] = None,
        offsets: Optional[Dict[str, int]] = None,
        upstream_versions: Optional[Dict[str, int]] = None,
        fingerprint: Optional[str] = None,
    ):
        self.frame = frame
        self.positions = positions
        self.consumed_batches = consumed_batches or []
        self.offsets = offsets
        self.upstream_versions = upstream_versions
        self.fingerprint = fingerprint


def _table_attributes(self: "TableMaterializer", table: TableDefinition, *args: Any, **kwargs: Any) -> Dict[str, Any]:
    return {"liveflow.table": table.name, "liveflow.kind": TableKind(table.kind).value}


class TableMaterializer:
    """Runs one table through read, check, transform, expectations and commit.

    Args:
        store: Table store holding rows and checkpoints
        settings: Settings for snapshot policy and quality sampling
        engine: Expectation engine; built from settings when omitted
        tracker: Checkpoint tracker; built over ``store`` when omitted
        metrics: Optional collector receiving per-batch quality
    """

    def __init__(
        self,
        store: TableStore,
        settings: Optional[LiveFlowSettings] = None,
        engine: Optional[ExpectationEngine] = None,
        tracker: Optional[IncrementalTracker] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.engine = engine or ExpectationEngine(sample_size=self.settings.quality.violation_sample_size)
        self.tracker = tracker or IncrementalTracker(store)
        self.metrics = metrics

    @property
    def snapshot_policy(self) -> JoinSnapshotPolicy:
        return JoinSnapshotPolicy(self.settings.execution.join_snapshot_policy)

    @traced("liveflow.table.materialize", attribute_getter=_table_attributes)
    def materialize(
        self,
        table: TableDefinition,
        run_id: Optional[str] = None,
        guard: Optional[CommitGuard] = None,
    ) -> TableRunResult:
        """Bring ``table`` up to date with its inputs.

        Returns:
            SUCCEEDED with the committed version, or NO_NEW_DATA / UP_TO_DATE
            when there was nothing to commit

        Raises:
            SchemaMismatchError: Before any write, on missing or unexpected columns
            ConstraintViolationError: When a FAIL expectation is violated
            CheckpointGapError: When consumed input is no longer available
            RunCancelledError: When ``guard`` refuses the commit
        """
        started = time.monotonic()
        checkpoint = self.tracker.checkpoint_for(table.name)
        kind = TableKind(table.kind)

        if kind == TableKind.SOURCE:
            batch, status = self._read_source(table, checkpoint)
        elif kind == TableKind.INCREMENTAL:
            batch, status = self._read_incremental(table, checkpoint)
        else:
            batch, status = self._read_full(table, checkpoint)

        if batch is None:
            logger.info(
                f"materializer.{status.value}",
                extra=sanitize_extras({"table_name": table.name, "checkpoint_version": checkpoint.version}),
            )
            return TableRunResult(
                table_name=table.name,
                status=status,
                commit_version=checkpoint.version or None,
                duration_seconds=time.monotonic() - started,
            )

        frame = self._conform(table, batch.frame)
        self._check_expectation_columns(table, frame)
        kept, report = self.engine.evaluate(table.name, frame, table.expectations)
        if self.metrics is not None:
            self.metrics.record_quality(report)

        info = self._commit(table, checkpoint, batch, kept, run_id, guard)
        logger.info(
            "materializer.committed",
            extra=sanitize_extras({
                "table_name": table.name,
                "version": info.version,
                "mode": info.mode,
                "rows_written": info.row_count,
                "rows_dropped": report.dropped_rows,
            }),
        )
        return TableRunResult(
            table_name=table.name,
            status=TableRunStatus.SUCCEEDED,
            rows_written=info.row_count,
            quality=report,
            commit_version=info.version,
            duration_seconds=time.monotonic() - started,
        )

    # Input resolution

    def _read_source(self, table: TableDefinition, checkpoint: Checkpoint) -> Tuple[Optional[_Batch], TableRunStatus]:
        if table.materialization_mode == MaterializationMode.INCREMENTAL:
            batches = self.tracker.new_source_batches(table, checkpoint)
            if not batches:
                return None, TableRunStatus.NO_NEW_DATA
            keys = [batch.key for batch in batches]
            frame = pd.concat([batch.frame for batch in batches], ignore_index=True)
            return _Batch(frame, positions={"batches": keys}, consumed_batches=keys), TableRunStatus.SUCCEEDED

        frame = table.source.current_snapshot()
        fingerprint = snapshot_fingerprint(frame)
        if not checkpoint.is_initial and checkpoint.fingerprint == fingerprint:
            return None, TableRunStatus.UP_TO_DATE
        batch = _Batch(frame.reset_index(drop=True), positions={"fingerprint": fingerprint}, fingerprint=fingerprint)
        return batch, TableRunStatus.SUCCEEDED

    def _read_incremental(
        self, table: TableDefinition, checkpoint: Checkpoint
    ) -> Tuple[Optional[_Batch], TableRunStatus]:
        transform = table.transform
        slices: Dict[str, List[CommitSlice]] = {
            ref.name: self.tracker.new_upstream_slices(table.name, ref.name, checkpoint)
            for ref in transform.streaming_inputs
        }
        if not any(len(s.frame) for parts in slices.values() for s in parts):
            return None, TableRunStatus.NO_NEW_DATA

        snapshot_names = [ref.name for ref in transform.snapshot_inputs]
        if self._waiting_for(table, snapshot_names):
            return None, TableRunStatus.NO_NEW_DATA

        versions = {name: self.store.current_version(name) for name in table.upstream_names}
        offsets = dict(checkpoint.offsets)
        for name, parts in slices.items():
            if parts:
                offsets[name] = parts[-1].start_offset + len(parts[-1].frame)

        if self.snapshot_policy == JoinSnapshotPolicy.POINT_IN_TIME and snapshot_names:
            frame = self._apply_point_in_time(table, slices, snapshot_names)
        else:
            frames = {name: self._concat_slices(name, parts) for name, parts in slices.items()}
            frames.update({name: self.store.read(name) for name in snapshot_names})
            self._check_inputs(table, frames)
            frame = self._apply(table, frames)

        positions = {"offsets": offsets, "snapshots": {name: versions[name] for name in snapshot_names}}
        batch = _Batch(frame, positions=positions, offsets=offsets, upstream_versions=versions)
        return batch, TableRunStatus.SUCCEEDED

    def _apply_point_in_time(
        self,
        table: TableDefinition,
        slices: Mapping[str, List[CommitSlice]],
        snapshot_names: List[str],
    ) -> pd.DataFrame:
        """Transform each upstream slice against the snapshots visible at its commit."""
        ordered = sorted(
            ((name, part) for name, parts in slices.items() for part in parts),
            key=lambda item: item[1].seq,
        )
        outputs = []
        for name, part in ordered:
            frames = {other: self._concat_slices(other, []) for other in slices}
            frames[name] = part.frame
            for snapshot in snapshot_names:
                frames[snapshot] = self.store.read(snapshot, as_of_seq=part.seq)
            self._check_inputs(table, frames, skip_empty_schema=True)
            outputs.append(self._apply(table, frames))
        return pd.concat(outputs, ignore_index=True)

    def _read_full(self, table: TableDefinition, checkpoint: Checkpoint) -> Tuple[Optional[_Batch], TableRunStatus]:
        if not is_stale(table, self.store):
            return None, TableRunStatus.UP_TO_DATE
        if self._waiting_for(table, table.upstream_names):
            return None, TableRunStatus.NO_NEW_DATA

        versions = {name: self.store.current_version(name) for name in table.upstream_names}
        frames = {name: self.store.read(name) for name in table.upstream_names}
        self._check_inputs(table, frames)
        frame = self._apply(table, frames)
        return _Batch(frame, positions={"upstream_versions": versions}, upstream_versions=versions), TableRunStatus.SUCCEEDED

    def _waiting_for(self, table: TableDefinition, names: List[str]) -> bool:
        pending = [name for name in names if self.store.current_version(name) == 0]
        if pending:
            logger.info(
                "materializer.waiting_for_upstream",
                extra=sanitize_extras({"table_name": table.name, "upstream": ",".join(pending)}),
            )
        return bool(pending)

    def _concat_slices(self, name: str, parts: List[CommitSlice]) -> pd.DataFrame:
        if not parts:
            return pd.DataFrame(columns=self.store.schema(name) or [])
        return pd.concat([part.frame for part in parts], ignore_index=True)

    # Schema checks and transformation

    def _check_inputs(
        self,
        table: TableDefinition,
        frames: Mapping[str, pd.DataFrame],
        skip_empty_schema: bool = False,
    ) -> None:
        """Every column the transformation reads must exist in its input."""
        for name, needed in table.transform.required_columns().items():
            frame = frames.get(name)
            if frame is None or (skip_empty_schema and not len(frame.columns)):
                continue
            if self.store.schema(name) is None and not len(frame.columns):
                continue
            missing = set(needed) - {str(column) for column in frame.columns}
            if missing:
                raise SchemaMismatchError(table.name, name, missing_columns=missing)

    def _check_expectation_columns(self, table: TableDefinition, frame: pd.DataFrame) -> None:
        available = {str(column) for column in frame.columns}
        missing = set()
        for expectation in table.expectations:
            missing |= set(expectation.columns) - available
        if missing:
            raise SchemaMismatchError(table.name, table.name, missing_columns=missing)

    def _apply(self, table: TableDefinition, frames: Mapping[str, pd.DataFrame]) -> pd.DataFrame:
        try:
            result = table.transform.apply(frames)
        except LiveFlowError:
            raise
        except Exception as exc:
            raise LiveFlowError(
                f"Transformation of table '{table.name}' failed: {exc}",
                error_code=ErrorCode.TRANSFORMATION_ERROR,
                details={"table": table.name, "transform": table.transform.describe()},
                cause=exc,
            ) from exc
        return result.reset_index(drop=True)

    def _conform(self, table: TableDefinition, frame: pd.DataFrame) -> pd.DataFrame:
        """Apply declared casts and line the batch up with the committed schema."""
        frame = frame.copy()
        for column, type_name in table.schema_hints.items():
            if column not in frame.columns:
                frame[column] = pd.Series([None] * len(frame), index=frame.index, dtype=object)
            frame[column] = _cast(frame[column], type_name)

        if not table.is_append_only:
            return frame

        existing = self.store.schema(table.name)
        if existing is None:
            return frame

        unexpected = [str(column) for column in frame.columns if column not in existing]
        if unexpected:
            raise SchemaMismatchError(table.name, table.name, unexpected_columns=unexpected)
        for column in existing:
            if column not in frame.columns:
                frame[column] = pd.Series([None] * len(frame), index=frame.index, dtype=object)
        return frame[existing]

    def _commit(
        self,
        table: TableDefinition,
        checkpoint: Checkpoint,
        batch: _Batch,
        frame: pd.DataFrame,
        run_id: Optional[str],
        guard: Optional[CommitGuard],
    ):
        commit_id = self.tracker.commit_id_for(table.name, checkpoint, batch.positions)
        advanced = self.tracker.advance(
            checkpoint,
            commit_id=commit_id,
            consumed_batches=batch.consumed_batches,
            offsets=batch.offsets,
            upstream_versions=batch.upstream_versions,
            fingerprint=batch.fingerprint,
        )
        request = CommitRequest(
            table_name=table.name,
            mode=table.write_mode,
            frame=frame,
            checkpoint=advanced,
            commit_id=commit_id,
            base_version=checkpoint.version,
            run_id=run_id,
        )
        return self.store.commit(request, guard=guard)


def _to_bool(value: Any) -> Any:
    if value is None or (isinstance(value, float) and np.isnan(value)) or value is pd.NA:
        return None
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if isinstance(value, (int, float, np.integer, np.floating)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return None


def _cast(series: pd.Series, type_name: str) -> pd.Series:
    """Cast a column to a declared type; unconvertible values become NULL."""
    name = type_name.lower()
    dtype = SCHEMA_HINT_TYPES[name]
    if dtype.startswith("datetime64"):
        result = pd.to_datetime(series, errors="coerce")
        return result.dt.normalize() if name == "date" else result
    if dtype == "Int64":
        return np.trunc(pd.to_numeric(series, errors="coerce").astype("float64")).astype("Int64")
    if dtype == "float64":
        return pd.to_numeric(series, errors="coerce").astype("float64")
    if dtype == "boolean":
        return series.map(_to_bool).astype("boolean")
    return series.astype("string")


__all__ = ["TableMaterializer"]

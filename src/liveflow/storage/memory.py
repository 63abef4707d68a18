"""In-process table store guarded by a single re-entrant lock."""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional

import pandas as pd

from liveflow.common.exceptions import CheckpointGapError
from liveflow.constants import TableKind, WriteMode
from liveflow.logging import get_logger
from liveflow.observability.context import sanitize_extras
from liveflow.storage.base import (
    CommitGuard,
    CommitInfo,
    CommitRequest,
    CommitSlice,
    TableStore,
    table_not_found,
)
from liveflow.types.checkpoint import Checkpoint

logger = get_logger(__name__)


@dataclass
class _TableState:
    kind: TableKind
    properties: Dict[str, str]
    commits: List[CommitInfo] = field(default_factory=list)
    segments: List[CommitSlice] = field(default_factory=list)
    checkpoint: Optional[Checkpoint] = None


class InMemoryTableStore(TableStore):
    """Table store kept in process memory.

    State survives across pipeline runs of the same process, which is enough
    for tests, demos and restart-from-checkpoint within one interpreter.
    """

    def __init__(self, history_retention_versions: int = 10):
        super().__init__(history_retention_versions)
        self._lock = threading.RLock()
        self._tables: Dict[str, _TableState] = {}
        self._seq = 0
        self._commit_ids: Dict[str, CommitInfo] = {}

    def _state(self, name: str) -> _TableState:
        state = self._tables.get(name)
        if state is None:
            raise table_not_found(name)
        return state

    def register_table(
        self,
        name: str,
        kind: TableKind,
        properties: Optional[Mapping[str, str]] = None,
    ) -> None:
        with self._lock:
            state = self._tables.get(name)
            if state is None:
                self._tables[name] = _TableState(kind=kind, properties=dict(properties or {}))
            else:
                state.kind = kind
                state.properties = dict(properties or {})

    def tables(self) -> List[str]:
        with self._lock:
            return list(self._tables)

    def properties(self, name: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._state(name).properties)

    def get_checkpoint(self, name: str) -> Optional[Checkpoint]:
        with self._lock:
            checkpoint = self._state(name).checkpoint
            return checkpoint.model_copy(deep=True) if checkpoint else None

    def history(self, name: str) -> List[CommitInfo]:
        with self._lock:
            return list(self._state(name).commits)

    def row_count(self, name: str) -> int:
        with self._lock:
            state = self._state(name)
            if not state.segments:
                return 0
            if state.commits[-1].mode == WriteMode.REPLACE:
                return len(state.segments[-1].frame)
            last = state.segments[-1]
            return last.start_offset + len(last.frame)

    def read(self, name: str, as_of_seq: Optional[int] = None) -> pd.DataFrame:
        with self._lock:
            state = self._state(name)
            columns = list(state.commits[-1].columns) if state.commits else []
            visible = [commit for commit in state.commits if as_of_seq is None or commit.seq <= as_of_seq]
            if not visible:
                return pd.DataFrame(columns=columns)

            if visible[-1].mode == WriteMode.REPLACE:
                target = visible[-1].seq
                for segment in state.segments:
                    if segment.seq == target:
                        return segment.frame.copy()
                raise CheckpointGapError(
                    table=name,
                    upstream=name,
                    position=target,
                    message=f"Version {visible[-1].version} of '{name}' is outside the retained history",
                )

            frames = [segment.frame for segment in state.segments if as_of_seq is None or segment.seq <= as_of_seq]
            return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=columns)

    def read_since(self, name: str, offset: int) -> List[CommitSlice]:
        with self._lock:
            state = self._state(name)
            slices: List[CommitSlice] = []
            for segment in state.segments:
                end = segment.start_offset + len(segment.frame)
                if end <= offset:
                    continue
                skip = max(0, offset - segment.start_offset)
                slices.append(CommitSlice(
                    seq=segment.seq,
                    start_offset=segment.start_offset + skip,
                    frame=segment.frame.iloc[skip:].reset_index(drop=True).copy(),
                ))
            return slices

    def commit(self, request: CommitRequest, guard: Optional[CommitGuard] = None) -> CommitInfo:
        with self._lock:
            existing = self._commit_ids.get(request.commit_id)
            if existing is not None:
                logger.info(
                    "store.commit.duplicate",
                    extra=sanitize_extras({"table_name": request.table_name, "commit_id": request.commit_id}),
                )
                return existing

            state = self._state(request.table_name)
            current_version = state.commits[-1].version if state.commits else 0
            self._check_commit(request, current_version, guard)

            mode = WriteMode(request.mode)
            start_offset = self.row_count(request.table_name) if mode == WriteMode.APPEND else 0
            self._seq += 1
            frame = request.frame.reset_index(drop=True).copy()
            info = CommitInfo(
                table_name=request.table_name,
                version=current_version + 1,
                seq=self._seq,
                mode=mode,
                row_count=len(frame),
                start_offset=start_offset,
                commit_id=request.commit_id,
                run_id=request.run_id,
                committed_at=datetime.now(timezone.utc),
                columns=[str(column) for column in frame.columns],
            )

            state.segments.append(CommitSlice(seq=info.seq, start_offset=start_offset, frame=frame))
            state.commits.append(info)
            state.checkpoint = request.checkpoint.model_copy(deep=True)
            self._commit_ids[request.commit_id] = info

            if mode == WriteMode.REPLACE and len(state.segments) > self.history_retention_versions:
                state.segments = state.segments[-self.history_retention_versions:]

            return info

    def reset(self, name: str) -> None:
        with self._lock:
            state = self._state(name)
            for commit in state.commits:
                self._commit_ids.pop(commit.commit_id, None)
            self._tables[name] = _TableState(kind=state.kind, properties=state.properties)

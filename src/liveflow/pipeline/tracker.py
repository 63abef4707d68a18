"""Incremental ingestion tracking.

The tracker answers "what has this table not seen yet" from the table's
checkpoint and derives the checkpoint and commit id of the next commit.
Delivery is at least once; exactly-once output comes from committing rows
and checkpoint together under a deterministic commit id.
"""

import hashlib
import json
from typing import Any, Iterable, List, Mapping, Optional

import pandas as pd

from liveflow.common.exceptions import CheckpointGapError, ErrorCode, LiveFlowError
from liveflow.logging import get_logger
from liveflow.observability.context import sanitize_extras
from liveflow.pipeline.definition import TableDefinition
from liveflow.pipeline.sources import IncrementalSource, SourceBatch
from liveflow.storage.base import CommitSlice, TableStore
from liveflow.types.checkpoint import Checkpoint

logger = get_logger(__name__)


def snapshot_fingerprint(frame: pd.DataFrame) -> str:
    """Content hash of a snapshot; independent of the index, sensitive to column names and order."""
    digest = hashlib.sha256()
    digest.update(json.dumps([str(column) for column in frame.columns]).encode("utf-8"))
    if len(frame):
        hashes = pd.util.hash_pandas_object(frame.astype(object), index=False)
        digest.update(hashes.to_numpy().tobytes())
    return digest.hexdigest()


class IncrementalTracker:
    """Checkpoint bookkeeping for one table store.

    Args:
        store: Store holding the checkpoints and upstream commit slices
    """

    def __init__(self, store: TableStore):
        self.store = store

    def checkpoint_for(self, table_name: str) -> Checkpoint:
        """Stored checkpoint of a table, or an initial one before its first commit."""
        return self.store.get_checkpoint(table_name) or Checkpoint.initial(table_name)

    def new_source_batches(self, table: TableDefinition, checkpoint: Checkpoint) -> List[SourceBatch]:
        """Landing-zone batches not yet recorded in the checkpoint.

        Raises:
            CheckpointGapError: If a consumed batch disappeared from the source
            UpstreamUnavailableError: If the source cannot be reached
        """
        if not isinstance(table.source, IncrementalSource):
            raise LiveFlowError(
                f"Table '{table.name}' is not fed by an incremental source",
                error_code=ErrorCode.INVALID_ARGUMENT,
                details={"table": table.name},
            )
        batches = list(table.source.new_records_since(checkpoint.consumed_batches, table_name=table.name))
        logger.debug(
            "tracker.source_batches",
            extra=sanitize_extras({
                "table_name": table.name,
                "consumed": len(checkpoint.consumed_batches),
                "new_batches": len(batches),
            }),
        )
        return batches

    def new_upstream_slices(self, table_name: str, upstream: str, checkpoint: Checkpoint) -> List[CommitSlice]:
        """Commit slices of an append-only upstream after the consumed offset.

        Raises:
            CheckpointGapError: If the consumed offset lies beyond the upstream's
                rows, i.e. the upstream was reset or purged
        """
        offset = checkpoint.offset_for(upstream)
        available = self.store.row_count(upstream)
        if offset > available:
            raise CheckpointGapError(
                table=table_name,
                upstream=upstream,
                position=offset,
                available=available,
                message=(
                    f"Checkpoint of '{table_name}' consumed {offset} row(s) of '{upstream}', "
                    f"which now holds {available}; a full refresh of '{table_name}' is required"
                ),
            )
        return self.store.read_since(upstream, offset)

    @staticmethod
    def advance(
        checkpoint: Checkpoint,
        *,
        commit_id: str,
        consumed_batches: Iterable[str] = (),
        offsets: Optional[Mapping[str, int]] = None,
        upstream_versions: Optional[Mapping[str, int]] = None,
        fingerprint: Optional[str] = None,
    ) -> Checkpoint:
        return checkpoint.advance(
            commit_id=commit_id,
            consumed_batches=consumed_batches,
            offsets=offsets,
            upstream_versions=upstream_versions,
            fingerprint=fingerprint,
        )

    @staticmethod
    def commit_id_for(table_name: str, checkpoint: Checkpoint, positions: Mapping[str, Any]) -> str:
        """Deterministic id of the commit that moves ``checkpoint`` to ``positions``.

        A retry computing the same commit from the same checkpoint gets the
        same id, so the store can ignore the duplicate.
        """
        payload = json.dumps(
            {"table": table_name, "base_version": checkpoint.version, "positions": positions},
            sort_keys=True,
            default=str,
        )
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
        return f"{table_name}-v{checkpoint.version + 1}-{digest}"

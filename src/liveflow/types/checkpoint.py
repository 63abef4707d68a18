"""Ingestion checkpoint model.

A checkpoint records how far a table has consumed its inputs: landing-zone
batch keys for source tables, row offsets for streamed upstream tables and
the upstream versions seen by fully recomputed tables. It is persisted in
the same atomic commit as the rows it describes.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional

from pydantic import Field

from liveflow.common.exceptions import validation_error
from liveflow.types.base import LiveFlowBaseModel


class Checkpoint(LiveFlowBaseModel):
    """Persisted ingestion position of one table.

    Attributes:
        table_name: Table owning the checkpoint
        version: Number of commits applied to the table (0 before the first)
        consumed_batches: Landing-zone batch keys already ingested, in order
        offsets: Rows consumed per streamed upstream table
        upstream_versions: Upstream table versions seen at the last commit
        fingerprint: Content hash of the last ingested reference snapshot
        commit_id: Identifier of the commit that wrote this checkpoint
        updated_at: When the checkpoint was written
    """

    table_name: str
    version: int = Field(default=0, ge=0)
    consumed_batches: List[str] = Field(default_factory=list)
    offsets: Dict[str, int] = Field(default_factory=dict)
    upstream_versions: Dict[str, int] = Field(default_factory=dict)
    fingerprint: Optional[str] = None
    commit_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def initial(cls, table_name: str) -> "Checkpoint":
        return cls(table_name=table_name)

    @property
    def is_initial(self) -> bool:
        return self.version == 0

    def offset_for(self, upstream: str) -> int:
        return self.offsets.get(upstream, 0)

    def advance(
        self,
        *,
        commit_id: str,
        consumed_batches: Iterable[str] = (),
        offsets: Optional[Mapping[str, int]] = None,
        upstream_versions: Optional[Mapping[str, int]] = None,
        fingerprint: Optional[str] = None,
    ) -> "Checkpoint":
        """Return the checkpoint that follows this one.

        Offsets only move forward and batch keys are only ever added.

        Raises:
            LiveFlowError: If an offset would move backwards
        """
        merged_offsets = dict(self.offsets)
        for upstream, offset in (offsets or {}).items():
            if offset < merged_offsets.get(upstream, 0):
                raise validation_error(
                    f"Checkpoint offset for '{upstream}' cannot move backwards",
                    field=f"offsets.{upstream}",
                    value=offset,
                )
            merged_offsets[upstream] = offset

        seen = set(self.consumed_batches)
        batches = list(self.consumed_batches)
        for key in consumed_batches:
            if key not in seen:
                seen.add(key)
                batches.append(key)

        return Checkpoint(
            table_name=self.table_name,
            version=self.version + 1,
            consumed_batches=batches,
            offsets=merged_offsets,
            upstream_versions=dict(upstream_versions if upstream_versions is not None else self.upstream_versions),
            fingerprint=fingerprint if fingerprint is not None else self.fingerprint,
            commit_id=commit_id,
            updated_at=datetime.now(timezone.utc),
        )

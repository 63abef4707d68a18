from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import SettingsConfigDict

from liveflow.constants import JoinSnapshotPolicy
from .base import LiveFlowBaseSettings


class ExecutionSettings(LiveFlowBaseSettings):
    model_config = SettingsConfigDict(env_prefix="LIVEFLOW_EXECUTION_")

    max_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum number of tables of one stage materialized concurrently"
    )
    stage_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Deadline for each execution stage. Tables still running when it passes "
                    "are treated as failed and never commit. None disables the deadline."
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retry attempts for retryable failures such as an unreachable landing zone"
    )
    retry_delay_seconds: float = Field(
        default=0.5,
        ge=0.0,
        le=60.0,
        description="Initial delay between retry attempts; doubles on each attempt"
    )
    join_snapshot_policy: JoinSnapshotPolicy = Field(
        default=JoinSnapshotPolicy.LATEST,
        description="Reference snapshot used when joining incremental batches: the latest "
                    "snapshot, or the snapshot current when each upstream slice was committed"
    )

    @field_validator("join_snapshot_policy", mode="before")
    @classmethod
    def normalize_policy(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

"""Shared error types for liveflow."""

from liveflow.common.exceptions import (
    CheckpointGapError,
    CommitConflictError,
    ConstraintViolationError,
    CyclicDependencyError,
    ErrorCode,
    LiveFlowError,
    PipelineDefinitionError,
    RunCancelledError,
    SchemaMismatchError,
    StageTimeoutError,
    UndefinedTableError,
    UpstreamUnavailableError,
    configuration_error,
    validation_error,
)

__all__ = [
    "ErrorCode",
    "LiveFlowError",
    "PipelineDefinitionError",
    "CyclicDependencyError",
    "UndefinedTableError",
    "CheckpointGapError",
    "ConstraintViolationError",
    "SchemaMismatchError",
    "UpstreamUnavailableError",
    "CommitConflictError",
    "StageTimeoutError",
    "RunCancelledError",
    "configuration_error",
    "validation_error",
]

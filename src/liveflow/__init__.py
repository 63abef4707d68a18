from liveflow.__version__ import __version__

from liveflow.api import configure_logging, get_execution_plan, run_pipeline, validate_pipeline
from liveflow.common.exceptions import (
    CheckpointGapError,
    ConstraintViolationError,
    CyclicDependencyError,
    ErrorCode,
    LiveFlowError,
    PipelineDefinitionError,
    SchemaMismatchError,
    UndefinedTableError,
    UpstreamUnavailableError,
)
from liveflow.constants import (
    JoinSnapshotPolicy,
    Layer,
    MaterializationMode,
    TableKind,
    TableRunStatus,
    ViolationPolicy,
)
from liveflow.pipeline import (
    Aggregate,
    Expectation,
    FileSnapshotSource,
    FrameSnapshotSource,
    InMemoryLandingZone,
    InnerJoin,
    LandingZoneSource,
    PipelineDefinition,
    PipelineExecutor,
    PythonTransform,
    Select,
    TableDefinition,
    expect,
    expect_all,
    expect_all_or_drop,
    expect_all_or_fail,
    expect_or_drop,
    expect_or_fail,
    live,
    stream,
)
from liveflow.storage import InMemoryTableStore, SQLTableStore, create_store
from liveflow.types import Checkpoint, PipelineRunResult, QualityReport, TableRunResult

__all__ = [
    "__version__",

    "PipelineDefinition",
    "TableDefinition",
    "PipelineExecutor",
    "stream",
    "live",
    "LandingZoneSource",
    "InMemoryLandingZone",
    "FileSnapshotSource",
    "FrameSnapshotSource",
    "Select",
    "InnerJoin",
    "Aggregate",
    "PythonTransform",
    "Expectation",
    "expect",
    "expect_or_drop",
    "expect_or_fail",
    "expect_all",
    "expect_all_or_drop",
    "expect_all_or_fail",

    "InMemoryTableStore",
    "SQLTableStore",
    "create_store",

    "Checkpoint",
    "QualityReport",
    "TableRunResult",
    "PipelineRunResult",

    "TableKind",
    "MaterializationMode",
    "ViolationPolicy",
    "Layer",
    "JoinSnapshotPolicy",
    "TableRunStatus",

    # Exceptions (public API)
    "LiveFlowError",
    "ErrorCode",
    "PipelineDefinitionError",
    "CyclicDependencyError",
    "UndefinedTableError",
    "CheckpointGapError",
    "ConstraintViolationError",
    "SchemaMismatchError",
    "UpstreamUnavailableError",

    # api
    "configure_logging",
    "validate_pipeline",
    "get_execution_plan",
    "run_pipeline",
]

"""Declarative live tables.

Declaration:
    - refs.py: stream() and live() input references
    - sources.py: landing-zone and snapshot source readers
    - transforms.py: Select, InnerJoin, Aggregate, PythonTransform
    - expectations.py / decorators.py: data quality rules
    - definition.py: TableDefinition and PipelineDefinition

Execution:
    - resolver.py: dependency graph, ordering and staleness
    - tracker.py: checkpoints and commit ids
    - materializer.py: one table run
    - executor.py: concurrent pipeline runs
"""

from .decorators import (
    expect,
    expect_all,
    expect_all_or_drop,
    expect_all_or_fail,
    expect_or_drop,
    expect_or_fail,
)
from .definition import PipelineDefinition, TableDefinition, infer_kind
from .executor import PipelineExecutor
from .expectations import Expectation, ExpectationEngine
from .materializer import TableMaterializer
from .refs import InputRef, live, stream
from .resolver import (
    DependencyResolver,
    build_dag,
    downstream_of,
    execution_stages,
    is_stale,
    resolve,
)
from .sources import (
    FileSnapshotSource,
    FrameSnapshotSource,
    IncrementalSource,
    InMemoryLandingZone,
    LandingZoneSource,
    SnapshotSource,
    SourceBatch,
    SourceReader,
)
from .tracker import IncrementalTracker, snapshot_fingerprint
from .transforms import Aggregate, AggregateSpec, InnerJoin, PythonTransform, Select, Transformation
from .types import DependencyDAG, ExecutionPlan, ExecutionStage

__all__ = [
    "PipelineDefinition",
    "TableDefinition",
    "infer_kind",
    "InputRef",
    "stream",
    "live",
    "SourceReader",
    "IncrementalSource",
    "SnapshotSource",
    "SourceBatch",
    "LandingZoneSource",
    "InMemoryLandingZone",
    "FileSnapshotSource",
    "FrameSnapshotSource",
    "Transformation",
    "Select",
    "InnerJoin",
    "Aggregate",
    "AggregateSpec",
    "PythonTransform",
    "Expectation",
    "ExpectationEngine",
    "expect",
    "expect_or_drop",
    "expect_or_fail",
    "expect_all",
    "expect_all_or_drop",
    "expect_all_or_fail",
    "DependencyDAG",
    "ExecutionStage",
    "ExecutionPlan",
    "DependencyResolver",
    "build_dag",
    "resolve",
    "execution_stages",
    "downstream_of",
    "is_stale",
    "IncrementalTracker",
    "snapshot_fingerprint",
    "TableMaterializer",
    "PipelineExecutor",
]

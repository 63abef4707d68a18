"""Pipeline constants and enumerations.

Enum types shared by the definition, resolver, materializer and storage
layers.
"""

from enum import Enum


class TableKind(str, Enum):
    """Kind of a declared live table.

    SOURCE: Ingested from an external landing zone or reference snapshot
    INCREMENTAL: Appends rows derived from newly arrived upstream rows
    FULL_REFRESH: Recomputed from full upstream snapshots on each change
    AGGREGATE: Full recomputation of a grouped aggregate
    """

    SOURCE = "source"
    INCREMENTAL = "incremental"
    FULL_REFRESH = "full_refresh"
    AGGREGATE = "aggregate"


class MaterializationMode(str, Enum):
    """How a table's content evolves between commits.

    INCREMENTAL tables are append-only; FULL tables are replaced.
    """

    INCREMENTAL = "incremental"
    FULL = "full"


class ViolationPolicy(str, Enum):
    """Action taken for rows violating an expectation."""

    WARN = "warn"
    DROP = "drop"
    FAIL = "fail"


class Layer(str, Enum):
    """Medallion layer label of a table."""

    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"


class JoinSnapshotPolicy(str, Enum):
    """Which reference snapshot an incremental batch is joined against.

    LATEST: The snapshot current when the batch is processed
    POINT_IN_TIME: The snapshot current when each upstream slice was committed
    """

    LATEST = "latest"
    POINT_IN_TIME = "point_in_time"


class WriteMode(str, Enum):
    APPEND = "append"
    REPLACE = "replace"


class TableRunStatus(str, Enum):
    """Outcome of one table within a pipeline run."""

    SUCCEEDED = "succeeded"
    NO_NEW_DATA = "no_new_data"
    UP_TO_DATE = "up_to_date"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_healthy(self) -> bool:
        """Whether dependents of a table with this status may run."""
        return self in (
            TableRunStatus.SUCCEEDED,
            TableRunStatus.NO_NEW_DATA,
            TableRunStatus.UP_TO_DATE,
        )


class ExpectationAction(str, Enum):
    NONE = "none"
    WARNED = "warned"
    DROPPED = "dropped"
    FAILED = "failed"


# Layout hint keys understood by the storage layer; all other properties are opaque.
ZORDER_COLS_PROPERTY = "pipelines.autoOptimize.zOrderCols"
CLUSTER_COLS_PROPERTY = "pipelines.clusterBy"

"""Constants module for liveflow.

Enumerations used throughout the package. This module has no dependencies
on other liveflow modules.
"""

from liveflow.constants.pipeline import (
    CLUSTER_COLS_PROPERTY,
    ZORDER_COLS_PROPERTY,
    ExpectationAction,
    JoinSnapshotPolicy,
    Layer,
    MaterializationMode,
    TableKind,
    TableRunStatus,
    ViolationPolicy,
    WriteMode,
)

__all__ = [
    "TableKind",
    "MaterializationMode",
    "ViolationPolicy",
    "Layer",
    "JoinSnapshotPolicy",
    "WriteMode",
    "TableRunStatus",
    "ExpectationAction",
    "ZORDER_COLS_PROPERTY",
    "CLUSTER_COLS_PROPERTY",
]

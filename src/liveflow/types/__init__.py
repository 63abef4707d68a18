"""Core data models for liveflow."""

from liveflow.types.base import LiveFlowBaseModel
from liveflow.types.checkpoint import Checkpoint
from liveflow.types.results import (
    ExpectationResult,
    PipelineRunResult,
    QualityReport,
    TableRunResult,
)

__all__ = [
    "LiveFlowBaseModel",
    "Checkpoint",
    "ExpectationResult",
    "QualityReport",
    "TableRunResult",
    "PipelineRunResult",
]

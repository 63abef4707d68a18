"""OpenTelemetry accessors scoped to the liveflow instrumentation name."""

from typing import Optional

from opentelemetry import metrics, trace

from liveflow.__version__ import __version__

INSTRUMENTATION_NAME = "liveflow"

__all__ = [
    "INSTRUMENTATION_NAME",
    "get_tracer",
    "get_meter",
]


def get_tracer(name: str = INSTRUMENTATION_NAME, version: Optional[str] = None):
    """Return a tracer from the active provider, versioned with the package by default."""
    return trace.get_tracer(name, version or __version__)


def get_meter(name: str = INSTRUMENTATION_NAME, version: Optional[str] = None):
    """Return a meter from the active provider, versioned with the package by default."""
    return metrics.get_meter(name, version or __version__)

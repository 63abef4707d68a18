"""Logging filters that stamp pipeline run context onto log records.

Run, pipeline and table identifiers live in context variables so that the
worker threads of a pipeline run each log with the table they are
materializing.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Any, Dict, Optional

from liveflow.__version__ import __version__

run_id_var: ContextVar[Optional[str]] = ContextVar("liveflow_run_id", default=None)
pipeline_var: ContextVar[Optional[str]] = ContextVar("liveflow_pipeline", default=None)
table_var: ContextVar[Optional[str]] = ContextVar("liveflow_table", default=None)

_static_context: Dict[str, Any] = {}


class ContextFilter(logging.Filter):
    """Adds run context and static environment fields to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _static_context.items():
            if not hasattr(record, key):
                setattr(record, key, value)

        for key, var in (("run_id", run_id_var), ("pipeline", pipeline_var), ("table", table_var)):
            value = var.get()
            if value is not None or not hasattr(record, key):
                setattr(record, key, value)
        setattr(record, "sdk_name", "liveflow")
        setattr(record, "liveflow_version", __version__)
        return True


def set_logging_context(
    environment: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """Replace the static fields attached to every record.

    Passing ``None`` for both arguments clears the static context.
    """
    _static_context.clear()
    if environment is not None:
        _static_context["environment"] = environment
    if extra:
        _static_context.update(extra)


def set_run_context(
    run_id: Optional[str] = None,
    pipeline: Optional[str] = None,
) -> None:
    """Set run-scoped context variables."""
    if run_id is not None:
        run_id_var.set(run_id)
    if pipeline is not None:
        pipeline_var.set(pipeline)


def set_table_context(table: Optional[str]) -> None:
    table_var.set(table)


def clear_run_context() -> None:
    """Clear all run-scoped context variables."""
    run_id_var.set(None)
    pipeline_var.set(None)
    table_var.set(None)

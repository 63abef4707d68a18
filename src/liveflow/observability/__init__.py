"""Observability helpers: run context, scopes and telemetry extras."""

from liveflow.observability.context import (
    RunContext,
    run_scope,
    sanitize_extras,
    table_scope,
)

__all__ = [
    "RunContext",
    "run_scope",
    "table_scope",
    "sanitize_extras",
]

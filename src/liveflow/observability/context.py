"""Run-scoped observability context shared by logging and tracing."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry.trace import Status, StatusCode
from pydantic import Field

from liveflow.logging import get_logger
from liveflow.logging.filters import (
    clear_run_context,
    set_run_context,
    set_table_context,
    table_var,
)
from liveflow.telemetry import get_tracer
from liveflow.types.base import LiveFlowBaseModel


class RunContext(LiveFlowBaseModel):
    """Observability context propagated across a pipeline run."""

    run_id: str
    pipeline_name: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    telemetry_base: Dict[str, str] = Field(default_factory=dict, exclude=True)

    @classmethod
    def generate(cls, pipeline_name: str, **kwargs: Any) -> "RunContext":
        """Generate a new context with a unique run id."""
        ctx = cls(run_id=str(uuid.uuid4()), pipeline_name=pipeline_name, **kwargs)
        ctx.telemetry_base = ctx.to_telemetry_dict()
        return ctx

    @staticmethod
    def _stringify(value: Any) -> Optional[str]:
        if value is None:
            return None
        return str(value)

    def to_telemetry_dict(self) -> Dict[str, str]:
        payload: Dict[str, str] = {
            "run_id": self.run_id,
            "pipeline": self.pipeline_name,
        }
        for key, value in (self.attributes or {}).items():
            sanitized = self._stringify(value)
            if sanitized is not None:
                payload[f"ctx.{key}"] = sanitized
        return payload


@contextmanager
def run_scope(
    ctx: RunContext,
    *,
    operation: Optional[str] = None,
) -> Iterator[None]:
    """Apply logging + tracing scope for a pipeline run."""
    ctx.telemetry_base = ctx.to_telemetry_dict()
    set_run_context(run_id=ctx.run_id, pipeline=ctx.pipeline_name)

    tracer = get_tracer()
    span_name = operation or "liveflow.run"
    span_attributes = {f"liveflow.{key}": value for key, value in ctx.telemetry_base.items()}

    with tracer.start_as_current_span(span_name) as span:
        for key, value in span_attributes.items():
            span.set_attribute(key, value)

        try:
            yield
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR))
            get_logger(__name__).error(
                "run.failed",
                extra={**ctx.telemetry_base, "operation.name": span_name},
                exc_info=True,
            )
            raise
        finally:
            clear_run_context()


@contextmanager
def table_scope(ctx: RunContext, table_name: str) -> Iterator[None]:
    """Bind the run and table to the logging context of the current thread."""
    previous = table_var.get()
    set_run_context(run_id=ctx.run_id, pipeline=ctx.pipeline_name)
    set_table_context(table_name)
    try:
        yield
    finally:
        set_table_context(previous)


def sanitize_extras(
    extra: Optional[Dict[str, Any]],
    *,
    prefix: Optional[str] = None,
) -> Dict[str, str]:
    """Sanitize arbitrary telemetry extras into a JSON-safe dict."""
    if not extra:
        return {}

    result: Dict[str, str] = {}
    for key, value in extra.items():
        sanitized = RunContext._stringify(value)
        if sanitized is None:
            continue
        field = f"{prefix}{key}" if prefix else str(key)
        result[field] = sanitized
    return result


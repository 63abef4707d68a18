"""References from one live table to another.

``stream(name)`` reads only rows appended to ``name`` since the reader's
checkpoint; ``live(name)`` reads the full current snapshot. Both accept the
``LIVE.`` prefix used in pipeline SQL.
"""

from typing import Any

from pydantic import model_validator

from liveflow.types.base import LiveFlowBaseModel

_LIVE_PREFIX = "live."


def _strip_live_prefix(name: str) -> str:
    name = name.strip()
    if name.lower().startswith(_LIVE_PREFIX):
        return name[len(_LIVE_PREFIX):]
    return name


class InputRef(LiveFlowBaseModel):
    """A dependency edge: the table read and whether it is read incrementally."""

    name: str
    streaming: bool = False

    @model_validator(mode="before")
    @classmethod
    def coerce_name(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": _strip_live_prefix(data), "streaming": False}
        if isinstance(data, dict) and isinstance(data.get("name"), str):
            return {**data, "name": _strip_live_prefix(data["name"])}
        return data

    def __str__(self) -> str:
        return f"stream(LIVE.{self.name})" if self.streaming else f"LIVE.{self.name}"


def stream(name: str) -> InputRef:
    return InputRef(name=name, streaming=True)


def live(name: str) -> InputRef:
    return InputRef(name=name, streaming=False)

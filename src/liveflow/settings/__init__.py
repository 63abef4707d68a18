"""Configuration management for liveflow.

Built on pydantic-settings. Settings are split into domain files:

    - base.py: LiveFlowBaseSettings, shared ``.env`` handling
    - execution.py: worker pool size, stage timeout, retries, join snapshot policy
    - store.py: table store URL and history retention
    - quality.py: violation sample size and SQL dialect
    - main.py: LiveFlowSettings aggregate, get_settings() singleton

Configuration sources, highest priority first: environment variables, the
``.env`` file, field defaults.

Quick Start:
    >>> from liveflow.settings import get_settings
    >>> settings = get_settings()
    >>> settings.execution.max_workers
    4
"""

from .base import LiveFlowBaseSettings
from .execution import ExecutionSettings
from .main import LiveFlowSettings, get_settings, reload_settings
from .quality import QualitySettings
from .store import StoreSettings

__all__ = [
    "LiveFlowBaseSettings",
    "LiveFlowSettings",
    "ExecutionSettings",
    "StoreSettings",
    "QualitySettings",
    "get_settings",
    "reload_settings",
]

import logging
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import SettingsConfigDict

from .base import LiveFlowBaseSettings
from .execution import ExecutionSettings
from .quality import QualitySettings
from .store import StoreSettings

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class LiveFlowSettings(LiveFlowBaseSettings):
    """Aggregated liveflow configuration.

    Top-level fields read ``LIVEFLOW_*`` variables; domain settings read
    their own prefixes (``LIVEFLOW_EXECUTION_*``, ``LIVEFLOW_STORE_*``,
    ``LIVEFLOW_QUALITY_*``) or the nested form ``LIVEFLOW_EXECUTION__MAX_WORKERS``.
    """

    model_config = SettingsConfigDict(
        env_prefix="LIVEFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__"
    )

    pipeline_name: str = Field(
        default="liveflow",
        description="Default pipeline name used in logs and telemetry"
    )
    environment: str = Field(
        default="dev",
        description="Deployment environment label attached to every log record"
    )
    log_level: str = Field(
        default="INFO",
        description="Log level applied by setup_logging"
    )

    execution: ExecutionSettings = Field(
        default_factory=ExecutionSettings,
        description="Scheduling, timeout and retry behaviour"
    )
    store: StoreSettings = Field(
        default_factory=StoreSettings,
        description="Table store location and history retention"
    )
    quality: QualitySettings = Field(
        default_factory=QualitySettings,
        description="Expectation evaluation behaviour"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Invalid log level '{v}'. Use one of {sorted(_LOG_LEVELS)}")
        return level

    @property
    def uses_persistent_store(self) -> bool:
        return bool(self.store.url)


# Singleton instance
_settings: Optional[LiveFlowSettings] = None


def get_settings(force_reload: bool = False) -> LiveFlowSettings:
    """Get the singleton settings instance.

    Args:
        force_reload: Create a new instance even if one exists, picking up
            environment changes.

    Returns:
        LiveFlowSettings: The singleton settings instance
    """
    global _settings

    if _settings is None or force_reload:
        _settings = LiveFlowSettings()
        logging.getLogger(__name__).debug(
            "settings.loaded",
            extra={"environment": _settings.environment, "persistent_store": _settings.uses_persistent_store},
        )

    return _settings


def reload_settings() -> LiveFlowSettings:
    """Discard the cached instance and load settings again. Used by tests."""
    global _settings
    _settings = None
    return get_settings(force_reload=True)

from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class LiveFlowBaseSettings(BaseSettings):
    """Base class for all liveflow settings.

    Values come from environment variables (optionally via a ``.env`` file)
    and fall back to the defaults declared on each field. Domain settings
    subclass this and set their own ``env_prefix``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__"
    )

    def model_post_init(self, __context: Any) -> None:
        """Post initialization hook; subclasses call super() when overriding."""
        super().model_post_init(__context)

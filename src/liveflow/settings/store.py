from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import SettingsConfigDict

from .base import LiveFlowBaseSettings


class StoreSettings(LiveFlowBaseSettings):
    model_config = SettingsConfigDict(env_prefix="LIVEFLOW_STORE_")

    url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL of the table store (e.g. sqlite:///liveflow.db). "
                    "When unset, tables and checkpoints are kept in memory."
    )
    history_retention_versions: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Versions of each fully refreshed table kept for point-in-time reads"
    )
    table_prefix: str = Field(
        default="lf_",
        description="Prefix of the physical tables holding row data in the SQL store"
    )

    @field_validator("table_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if v and not v.replace("_", "").isalnum():
            raise ValueError(f"Invalid table prefix '{v}': use letters, digits and underscores")
        return v

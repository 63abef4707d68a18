from pydantic import Field
from pydantic_settings import SettingsConfigDict

from .base import LiveFlowBaseSettings


class QualitySettings(LiveFlowBaseSettings):
    model_config = SettingsConfigDict(env_prefix="LIVEFLOW_QUALITY_")

    violation_sample_size: int = Field(
        default=5,
        ge=0,
        le=1000,
        description="Offending rows included in a constraint violation error"
    )
    sql_dialect: str = Field(
        default="spark",
        description="sqlglot dialect used to parse expectation and filter expressions"
    )

"""Base model class for liveflow models with serialization support."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict


class LiveFlowBaseModel(BaseModel):
    """Base model for liveflow models with built-in serialization.

    Enum fields are stored by value and assignments are validated, so
    results and checkpoints can be persisted and logged as plain data.
    """
    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        use_enum_values=True,
        validate_assignment=True
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to a JSON-safe dictionary.

        Nested models, enums and datetimes are converted recursively.
        """
        data = self.model_dump(by_alias=False, exclude_none=True)

        def convert_nested(obj):
            if isinstance(obj, LiveFlowBaseModel):
                return obj.to_dict()
            elif isinstance(obj, dict):
                return {k: convert_nested(v) for k, v in obj.items()}
            elif isinstance(obj, (list, tuple)):
                return [convert_nested(item) for item in obj]
            elif isinstance(obj, Enum):
                return obj.value
            elif isinstance(obj, (datetime, date)):
                return obj.isoformat()
            return obj

        return convert_nested(data)

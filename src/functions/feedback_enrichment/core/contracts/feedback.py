"""Feedback item model and status enums."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ItemStatus(str, Enum):
    """Lifecycle status of a single feedback item inside the queue."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class RunStatus(str, Enum):
    """Run status of the pipeline as a whole."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class FeedbackItem(BaseModel):
    """A unit of customer feedback awaiting enrichment."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    id: str = Field(..., min_length=1, description="Feedback identifier, unique per user")
    user_id: str = Field(..., min_length=1, description="Owner of the feedback item")
    text: str = Field(..., description="Raw feedback text sent to the enrichment stages")
    created_at: str = Field(..., description="ISO-8601 creation timestamp")
    metadata: Optional[Dict[str, Any]] = Field(default=None)

    @field_validator("id", "user_id")
    @classmethod
    def _strip_identifier(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            msg = "identifier must be a non-empty string"
            raise ValueError(msg)
        return cleaned

    def to_payload(self) -> Dict[str, Any]:
        """Return the camelCase JSON form of the item."""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

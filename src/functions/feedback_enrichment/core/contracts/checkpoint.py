"""Durable checkpoint of a user's pipeline progress."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .feedback import ItemStatus, RunStatus


class CheckpointItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str
    status: ItemStatus = ItemStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    error: Optional[str] = None


class Checkpoint(BaseModel):
    """Serializable snapshot sufficient to resume a run after a restart.

    ``queue`` lists the remaining work in the order it will be processed: the
    item that was active when the snapshot was taken comes first.
    """

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    user_id: str = Field(..., min_length=1)
    queue: List[CheckpointItem] = Field(default_factory=list)
    processed_ids: List[str] = Field(default_factory=list)
    status: RunStatus = RunStatus.PAUSED
    active_item_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, value: Any) -> Any:
        # Documents written without a status resume as paused.
        return RunStatus.PAUSED if value in (None, "") else value

    @property
    def pending_ids(self) -> List[str]:
        """Ids that still need work, in processing order."""

        return [
            entry.id
            for entry in self.queue
            if entry.status in (ItemStatus.PENDING, ItemStatus.PROCESSING)
        ]

    def to_document(self) -> Dict[str, Any]:
        """Return the JSON document form (camelCase keys, ISO timestamps)."""

        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Checkpoint":
        return cls.model_validate(document)

"""Enrichment stage results and the persisted analysis record."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class SentimentResult(_CamelModel):
    label: str = Field(default="neutral")
    score: float = Field(default=0.0)
    raw: Any = Field(default=None, exclude=True)


class SummaryResult(_CamelModel):
    summary: str = Field(default="")
    raw: Any = Field(default=None, exclude=True)


class KnowledgeBaseMatch(_CamelModel):
    id: str
    score: float = Field(default=0.0)
    metadata: Optional[Dict[str, Any]] = None


class KnowledgeBaseMatchResult(_CamelModel):
    """Knowledge-base documents matched to a feedback item."""

    matches: List[KnowledgeBaseMatch] = Field(default_factory=list)

    @property
    def kb_match_ids(self) -> List[str]:
        """Ids of the matches, ignoring matches without an id."""

        return [match.id for match in self.matches if match.id]

    @property
    def tag_ids(self) -> List[str]:
        return [match.id for match in self.matches]


class SuggestedReply(_CamelModel):
    content: str = Field(default="")
    model: str = Field(default="hf-generate")
    raw: Any = Field(default=None, exclude=True)


class AnalysisJobMetadata(_CamelModel):
    """Bookkeeping about the run that produced an analysis."""

    started_at: str
    completed_at: str
    attempts: int = Field(..., ge=1)
    retry_delays: List[float] = Field(default_factory=list)
    last_error: Optional[str] = None


class AnalysisRecord(_CamelModel):
    """The enriched result persisted once per feedback item."""

    id: str = Field(..., description="'<feedbackId>-<completedAt>'")
    user_id: str
    feedback_id: str
    sentiment: SentimentResult
    tags: List[str] = Field(default_factory=list)
    kb_match_ids: List[str] = Field(default_factory=list)
    suggested_reply: SuggestedReply
    summary: Optional[str] = None
    job: AnalysisJobMetadata

    @staticmethod
    def build_id(feedback_id: str, completed_at: str) -> str:
        return f"{feedback_id}-{completed_at}"

    def to_document(self) -> Dict[str, Any]:
        """Return the camelCase JSON document handed to persisters."""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

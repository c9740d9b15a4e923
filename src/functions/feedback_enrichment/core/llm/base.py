"""Interface shared by enrichment gateways."""

from __future__ import annotations

import math
from typing import Any, Optional, Protocol

from ..contracts.analysis import (
    KnowledgeBaseMatchResult,
    SentimentResult,
    SuggestedReply,
    SummaryResult,
)
from ..contracts.feedback import FeedbackItem


def coerce_score(value: Any) -> float:
    """Numeric scores and numeric strings pass through; anything else is 0.0."""

    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            score = float(value)
        except ValueError:
            return 0.0
        return score if math.isfinite(score) else 0.0
    return 0.0


class EnrichmentGateway(Protocol):
    """The four AI calls applied to every feedback item, in this order.

    Implementations raise :class:`RateLimitError` (or any error carrying a 429
    status) when throttled so the processor can back off instead of failing.
    ``summarize`` is only called when ``supports_summary`` is true.
    """

    supports_summary: bool

    async def analyze_sentiment(self, item: FeedbackItem) -> SentimentResult:
        ...

    async def summarize(self, item: FeedbackItem, *, sentiment: SentimentResult) -> SummaryResult:
        ...

    async def match_knowledge_base(
        self,
        item: FeedbackItem,
        *,
        sentiment: SentimentResult,
        summary: Optional[SummaryResult] = None,
    ) -> KnowledgeBaseMatchResult:
        ...

    async def generate_reply(
        self,
        item: FeedbackItem,
        *,
        sentiment: SentimentResult,
        summary: Optional[SummaryResult],
        kb_matches: KnowledgeBaseMatchResult,
    ) -> SuggestedReply:
        ...

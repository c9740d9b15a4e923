"""
OpenAI implementation of the sentiment, summary and reply stages.

Knowledge-base matching needs the user's own documents, so it is delegated to
another gateway (typically :class:`HttpEnrichmentGateway`).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from openai import APIError, AsyncOpenAI, RateLimitError as OpenAIRateLimitError

from ..contracts.analysis import (
    KnowledgeBaseMatchResult,
    SentimentResult,
    SuggestedReply,
    SummaryResult,
)
from ..contracts.config import OpenAISettings
from ..contracts.feedback import FeedbackItem
from ..errors import EnrichmentStageError, RateLimitError
from ..prompts import (
    SYSTEM_PROMPT,
    build_reply_prompt,
    build_sentiment_prompt,
    build_summary_prompt,
)
from .base import EnrichmentGateway, coerce_score

logger = logging.getLogger(__name__)

SENTIMENT_LABELS = {"positive", "neutral", "negative"}


class OpenAIEnrichmentGateway:
    """Chat-completion backed gateway with JSON responses.

    The SDK's own retries are disabled; throttling surfaces as
    :class:`RateLimitError` and the pipeline applies its backoff.
    """

    supports_summary = True

    def __init__(
        self,
        settings: OpenAISettings,
        knowledge_base: EnrichmentGateway,
        *,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.settings = settings
        self.knowledge_base = knowledge_base
        self._owns_client = client is None
        self._client = client or AsyncOpenAI(
            api_key=settings.api_key,
            timeout=settings.timeout_seconds,
            max_retries=0,
        )
        logger.info("Initialized OpenAIEnrichmentGateway: model=%s", settings.model)

    async def aclose(self) -> None:
        """Close the OpenAI client this gateway created and the knowledge-base gateway."""
        if self._owns_client:
            await self._client.close()
        close = getattr(self.knowledge_base, "aclose", None)
        if close is not None:
            await close()

    async def _complete_json(self, stage: str, prompt: str) -> Dict[str, Any]:
        try:
            response = await self._client.chat.completions.create(
                model=self.settings.model,
                temperature=self.settings.temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )
        except OpenAIRateLimitError as exc:
            raise RateLimitError(str(exc) or "Rate limited by OpenAI", {"stage": stage}) from exc
        except APIError as exc:
            raise EnrichmentStageError(stage, f"OpenAI API error: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise EnrichmentStageError(stage, "OpenAI returned an empty response")
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise EnrichmentStageError(stage, "OpenAI returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise EnrichmentStageError(stage, "Unexpected response payload type")
        return data

    async def analyze_sentiment(self, item: FeedbackItem) -> SentimentResult:
        data = await self._complete_json("sentiment", build_sentiment_prompt(item.text))
        label = str(data.get("label") or "neutral").lower()
        if label not in SENTIMENT_LABELS:
            logger.warning("Unexpected sentiment label '%s' for %s; using neutral", label, item.id)
            label = "neutral"
        return SentimentResult(label=label, score=coerce_score(data.get("score")), raw=data)

    async def summarize(self, item: FeedbackItem, *, sentiment: SentimentResult) -> SummaryResult:
        data = await self._complete_json("summarization", build_summary_prompt(item.text, sentiment.label))
        return SummaryResult(summary=str(data.get("summary") or ""), raw=data)

    async def match_knowledge_base(
        self,
        item: FeedbackItem,
        *,
        sentiment: SentimentResult,
        summary: Optional[SummaryResult] = None,
    ) -> KnowledgeBaseMatchResult:
        return await self.knowledge_base.match_knowledge_base(item, sentiment=sentiment, summary=summary)

    async def generate_reply(
        self,
        item: FeedbackItem,
        *,
        sentiment: SentimentResult,
        summary: Optional[SummaryResult],
        kb_matches: KnowledgeBaseMatchResult,
    ) -> SuggestedReply:
        prompt = build_reply_prompt(
            item.text,
            sentiment_label=sentiment.label,
            summary=summary.summary if summary else None,
            kb_matches=[match.model_dump(mode="json") for match in kb_matches.matches],
        )
        data = await self._complete_json("reply_generation", prompt)
        return SuggestedReply(content=str(data.get("content") or ""), model=self.settings.model, raw=data)

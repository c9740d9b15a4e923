"""HTTP implementation of the enrichment gateway."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx

from ..contracts.analysis import (
    KnowledgeBaseMatch,
    KnowledgeBaseMatchResult,
    SentimentResult,
    SuggestedReply,
    SummaryResult,
)
from ..contracts.config import EnrichmentServiceConfig, ServiceEndpointConfig
from ..contracts.feedback import FeedbackItem
from ..errors import RATE_LIMIT_STATUS, EnrichmentStageError, RateLimitError
from .base import coerce_score

logger = logging.getLogger(__name__)


def parse_knowledge_base_matches(payload: Any) -> KnowledgeBaseMatchResult:
    """Read ``{"matches": [...]}``; each match may carry ``id`` or ``documentId``."""

    if not isinstance(payload, dict) or not isinstance(payload.get("matches"), list):
        return KnowledgeBaseMatchResult()

    matches = []
    for entry in payload["matches"]:
        if not isinstance(entry, dict):
            continue
        identifier = entry.get("id")
        if identifier is None:
            identifier = entry.get("documentId")
        metadata = entry.get("metadata")
        matches.append(
            KnowledgeBaseMatch(
                id="" if identifier is None else str(identifier),
                score=coerce_score(entry.get("score")),
                metadata=metadata if isinstance(metadata, dict) else None,
            )
        )
    return KnowledgeBaseMatchResult(matches=matches)


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class HttpEnrichmentGateway:
    """Calls one JSON endpoint per enrichment stage.

    Each request body is ``{"text", "metadata"}``; reply generation also
    receives the sentiment, summary and knowledge-base matches.
    """

    def __init__(
        self,
        config: EnrichmentServiceConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=5.0))

    @property
    def supports_summary(self) -> bool:
        return self._config.summarization is not None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _post_json(
        self,
        stage: str,
        endpoint: ServiceEndpointConfig,
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        url = str(endpoint.url)
        try:
            response = await self._http.post(
                url,
                headers=endpoint.build_headers(),
                json=payload,
                timeout=endpoint.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise EnrichmentStageError(stage, f"Request to {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise EnrichmentStageError(stage, f"HTTP error calling {url}: {exc}") from exc

        if response.status_code == RATE_LIMIT_STATUS:
            raise RateLimitError(
                "Rate limited by upstream API",
                {"stage": stage, "status": response.status_code},
                retry_after=_retry_after(response),
            )
        if response.status_code >= 400:
            raise EnrichmentStageError(
                stage,
                response.text or f"Unexpected API response: {response.status_code}",
                {"status": response.status_code},
            )
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise EnrichmentStageError(stage, f"Invalid JSON response from {url}") from exc
        if isinstance(data, dict):
            return data
        raise EnrichmentStageError(stage, "Unexpected response payload type")

    @staticmethod
    def _base_payload(item: FeedbackItem) -> Dict[str, Any]:
        return {"text": item.text, "metadata": item.metadata}

    async def analyze_sentiment(self, item: FeedbackItem) -> SentimentResult:
        data = await self._post_json("sentiment", self._config.require("sentiment"), self._base_payload(item))
        label = data.get("label")
        return SentimentResult(
            label="neutral" if label is None else str(label),
            score=coerce_score(data.get("score")),
            raw=data,
        )

    async def summarize(self, item: FeedbackItem, *, sentiment: SentimentResult) -> SummaryResult:
        if self._config.summarization is None:
            raise EnrichmentStageError("summarization", "Summarization endpoint is not configured")
        data = await self._post_json("summarization", self._config.summarization, self._base_payload(item))
        summary = data.get("summary")
        return SummaryResult(summary="" if summary is None else str(summary), raw=data)

    async def match_knowledge_base(
        self,
        item: FeedbackItem,
        *,
        sentiment: SentimentResult,
        summary: Optional[SummaryResult] = None,
    ) -> KnowledgeBaseMatchResult:
        data = await self._post_json("knowledge_base", self._config.require("knowledge_base"), self._base_payload(item))
        return parse_knowledge_base_matches(data)

    async def generate_reply(
        self,
        item: FeedbackItem,
        *,
        sentiment: SentimentResult,
        summary: Optional[SummaryResult],
        kb_matches: KnowledgeBaseMatchResult,
    ) -> SuggestedReply:
        payload = self._base_payload(item)
        payload.update(
            {
                "sentiment": sentiment.model_dump(mode="json", by_alias=True),
                "summary": summary.model_dump(mode="json", by_alias=True) if summary else None,
                "kbMatches": {
                    "kbMatchIds": kb_matches.kb_match_ids,
                    "matches": kb_matches.model_dump(mode="json", by_alias=True)["matches"],
                },
            }
        )
        data = await self._post_json("reply_generation", self._config.require("reply_generation"), payload)
        content = data.get("content")
        model = data.get("model")
        return SuggestedReply(
            content="" if content is None else str(content),
            model="hf-generate" if model is None else str(model),
            raw=data,
        )

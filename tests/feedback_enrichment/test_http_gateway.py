import json

import httpx
import pytest

from src.functions.feedback_enrichment.core.contracts import (
    EnrichmentServiceConfig,
    FeedbackItem,
    KnowledgeBaseMatchResult,
    SentimentResult,
    ServiceEndpointConfig,
)
from src.functions.feedback_enrichment.core.errors import (
    ConfigurationError,
    EnrichmentStageError,
    RateLimitError,
    is_rate_limit_error,
)
from src.functions.feedback_enrichment.core.llm.http_gateway import (
    HttpEnrichmentGateway,
    parse_knowledge_base_matches,
)


@pytest.fixture
def item():
    return FeedbackItem(
        id="fb-1",
        user_id="user-1",
        text="The export button is broken",
        created_at="2024-05-01T00:00:00Z",
        metadata={"channel": "email"},
    )


def service_config(with_summary=True):
    endpoints = {
        "sentiment": ServiceEndpointConfig(url="https://ai.example.com/sentiment", api_key="secret"),
        "knowledge_base": ServiceEndpointConfig(url="https://ai.example.com/kb"),
        "reply_generation": ServiceEndpointConfig(url="https://ai.example.com/reply"),
    }
    if with_summary:
        endpoints["summarization"] = ServiceEndpointConfig(url="https://ai.example.com/summary")
    return EnrichmentServiceConfig(**endpoints)


def make_gateway(handler, config=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpEnrichmentGateway(config or service_config(), http_client=client)


@pytest.mark.asyncio
async def test_sentiment_posts_text_and_metadata(item):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"label": "negative", "score": -0.7})

    gateway = make_gateway(handler)
    result = await gateway.analyze_sentiment(item)

    assert result.label == "negative"
    assert result.score == -0.7
    assert seen["url"] == "https://ai.example.com/sentiment"
    assert seen["headers"]["X-API-Key"] == "secret"
    assert seen["body"] == {"text": "The export button is broken", "metadata": {"channel": "email"}}


@pytest.mark.asyncio
async def test_missing_fields_fall_back_to_defaults(item):
    def handler(request):
        return httpx.Response(200, json={})

    gateway = make_gateway(handler)

    sentiment = await gateway.analyze_sentiment(item)
    reply = await gateway.generate_reply(
        item,
        sentiment=sentiment,
        summary=None,
        kb_matches=KnowledgeBaseMatchResult(),
    )

    assert sentiment.label == "neutral"
    assert sentiment.score == 0.0
    assert reply.content == ""
    assert reply.model == "hf-generate"


@pytest.mark.asyncio
async def test_non_numeric_sentiment_score_falls_back_to_zero(item):
    scores = iter(["high", "0.25", True])

    def handler(request):
        return httpx.Response(200, json={"label": "positive", "score": next(scores)})

    gateway = make_gateway(handler)

    assert (await gateway.analyze_sentiment(item)).score == 0.0
    assert (await gateway.analyze_sentiment(item)).score == 0.25
    assert (await gateway.analyze_sentiment(item)).score == 0.0


@pytest.mark.asyncio
async def test_rate_limit_status_raises_rate_limit_error(item):
    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "2"}, text="slow down")

    gateway = make_gateway(handler)

    with pytest.raises(RateLimitError) as exc_info:
        await gateway.analyze_sentiment(item)

    assert exc_info.value.retry_after == 2.0
    assert is_rate_limit_error(exc_info.value)


@pytest.mark.asyncio
async def test_server_error_raises_stage_error_with_body(item):
    def handler(request):
        return httpx.Response(503, text="model loading")

    gateway = make_gateway(handler)

    with pytest.raises(EnrichmentStageError) as exc_info:
        await gateway.match_knowledge_base(item, sentiment=SentimentResult())

    assert str(exc_info.value) == "model loading"
    assert exc_info.value.stage == "knowledge_base"
    assert not is_rate_limit_error(exc_info.value)


@pytest.mark.asyncio
async def test_transport_errors_become_stage_errors(item):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    gateway = make_gateway(handler)

    with pytest.raises(EnrichmentStageError):
        await gateway.analyze_sentiment(item)


@pytest.mark.asyncio
async def test_reply_request_includes_prior_stage_results(item):
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"content": "Sorry about that!", "model": "reply-v2"})

    gateway = make_gateway(handler)
    kb_matches = parse_knowledge_base_matches(
        {"matches": [{"id": "kb-1", "score": 0.9}, {"documentId": "kb-2"}, {"score": 0.1}]}
    )

    reply = await gateway.generate_reply(
        item,
        sentiment=SentimentResult(label="negative", score=-0.5),
        summary=None,
        kb_matches=kb_matches,
    )

    assert reply.content == "Sorry about that!"
    assert reply.model == "reply-v2"
    assert seen["body"]["sentiment"] == {"label": "negative", "score": -0.5}
    assert seen["body"]["summary"] is None
    assert seen["body"]["kbMatches"]["kbMatchIds"] == ["kb-1", "kb-2"]
    assert len(seen["body"]["kbMatches"]["matches"]) == 3


def test_parse_knowledge_base_matches_tolerates_bad_payloads():
    assert parse_knowledge_base_matches(None).matches == []
    assert parse_knowledge_base_matches({"matches": "nope"}).matches == []

    result = parse_knowledge_base_matches({"matches": [{"id": 7, "score": "high"}, "junk"]})

    assert result.kb_match_ids == ["7"]
    assert result.matches[0].score == 0.0


@pytest.mark.asyncio
async def test_summary_stage_is_optional(item):
    def handler(request):
        return httpx.Response(200, json={"summary": "Export is broken"})

    with_summary = make_gateway(handler)
    without_summary = make_gateway(handler, service_config(with_summary=False))

    assert with_summary.supports_summary
    assert not without_summary.supports_summary
    summary = await with_summary.summarize(item, sentiment=SentimentResult())
    assert summary.summary == "Export is broken"


@pytest.mark.asyncio
async def test_unconfigured_stage_raises_configuration_error(item):
    gateway = make_gateway(
        lambda request: httpx.Response(200, json={}),
        EnrichmentServiceConfig(knowledge_base=ServiceEndpointConfig(url="https://ai.example.com/kb")),
    )

    with pytest.raises(ConfigurationError):
        await gateway.analyze_sentiment(item)


@pytest.mark.asyncio
async def test_aclose_only_closes_the_client_it_created():
    injected = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
    borrowed = HttpEnrichmentGateway(service_config(), http_client=injected)
    owned = HttpEnrichmentGateway(service_config())

    await borrowed.aclose()
    await owned.aclose()

    assert not injected.is_closed
    assert owned._http.is_closed
    await injected.aclose()

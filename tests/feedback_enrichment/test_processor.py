import pytest

from src.functions.feedback_enrichment.core.contracts import (
    Checkpoint,
    CheckpointItem,
    FeedbackItem,
    ItemStatus,
    KnowledgeBaseMatch,
    KnowledgeBaseMatchResult,
    RunStatus,
    SentimentResult,
    SuggestedReply,
    SummaryResult,
)
from src.functions.feedback_enrichment.core.db.checkpoint_store import InMemoryCheckpointStore
from src.functions.feedback_enrichment.core.errors import (
    CheckpointError,
    ConfigurationError,
    EnrichmentStageError,
    RateLimitError,
)
from src.functions.feedback_enrichment.core.orchestration.processor import PipelineProcessor
from src.functions.feedback_enrichment.core.quota.gates import SimpleQuotaGate, UnlimitedQuotaGate

USER_ID = "user-1"


def make_items(count, user_id=USER_ID):
    return [
        FeedbackItem(
            id=f"fb-{index}",
            user_id=user_id,
            text=f"Feedback number {index}",
            created_at="2024-05-01T00:00:00Z",
        )
        for index in range(1, count + 1)
    ]


class FakeGateway:
    def __init__(self, rate_limit_once=None, fail_always=None, rate_limit_always=None, supports_summary=True):
        self.rate_limit_once = set(rate_limit_once or [])
        self.rate_limit_always = set(rate_limit_always or [])
        self.fail_always = set(fail_always or [])
        self.supports_summary = supports_summary
        self.calls = []

    async def analyze_sentiment(self, item):
        self.calls.append(("sentiment", item.id))
        if item.id in self.rate_limit_once:
            self.rate_limit_once.discard(item.id)
            raise RateLimitError("Rate limited by upstream API")
        if item.id in self.rate_limit_always:
            raise RateLimitError("Rate limited by upstream API")
        if item.id in self.fail_always:
            raise EnrichmentStageError("sentiment", "service unavailable")
        return SentimentResult(label="positive", score=0.9)

    async def summarize(self, item, *, sentiment):
        self.calls.append(("summary", item.id))
        return SummaryResult(summary=f"summary of {item.id}")

    async def match_knowledge_base(self, item, *, sentiment, summary=None):
        self.calls.append(("knowledge_base", item.id))
        return KnowledgeBaseMatchResult(matches=[KnowledgeBaseMatch(id="kb-1", score=0.8)])

    async def generate_reply(self, item, *, sentiment, summary, kb_matches):
        self.calls.append(("reply", item.id))
        return SuggestedReply(content=f"Thanks for {item.id}")


class FakePersister:
    def __init__(self):
        self.records = []

    async def persist(self, record, feedback):
        self.records.append(record)

    @property
    def persisted_ids(self):
        return [record.feedback_id for record in self.records]


class FailingCheckpointStore(InMemoryCheckpointStore):
    async def save(self, checkpoint):
        raise OSError("disk full")


class RecordingSleep:
    def __init__(self, on_call=None):
        self.delays = []
        self.on_call = on_call

    async def __call__(self, milliseconds):
        self.delays.append(milliseconds)
        if self.on_call is not None:
            await self.on_call(len(self.delays))


def build_processor(
    *,
    gateway=None,
    persister=None,
    store=None,
    quota=None,
    config=None,
    sleep=None,
):
    return PipelineProcessor(
        gateway=gateway or FakeGateway(),
        persister=persister or FakePersister(),
        checkpoint_store=store if store is not None else InMemoryCheckpointStore(),
        quota=quota,
        config=config,
        sleep=sleep or RecordingSleep(),
    )


@pytest.mark.asyncio
async def test_rate_limited_item_backs_off_once_and_every_item_is_persisted():
    gateway = FakeGateway(rate_limit_once={"fb-3"})
    persister = FakePersister()
    store = InMemoryCheckpointStore()
    sleep = RecordingSleep()
    processor = build_processor(
        gateway=gateway,
        persister=persister,
        store=store,
        config={"batch_size": 2},
        sleep=sleep,
    )

    await processor.start(USER_ID, make_items(5))

    assert sorted(persister.persisted_ids) == ["fb-1", "fb-2", "fb-3", "fb-4", "fb-5"]
    assert [delay for delay in sleep.delays if delay == 1000] == [1000]
    record = next(record for record in persister.records if record.feedback_id == "fb-3")
    assert record.job.attempts == 2
    assert record.job.retry_delays == [1000]
    assert record.job.last_error == "Rate limited by upstream API"
    assert store.documents == {}
    assert processor.state.state.rate_limit_error is None


@pytest.mark.asyncio
async def test_quota_stop_checkpoints_remaining_work_for_a_new_processor():
    items = make_items(5)
    persister = FakePersister()
    store = InMemoryCheckpointStore()
    first = build_processor(
        persister=persister,
        store=store,
        quota=SimpleQuotaGate(3),
        config={"batch_size": 2},
    )

    await first.start(USER_ID, items)

    assert persister.persisted_ids == ["fb-1", "fb-2", "fb-3"]
    assert first.stop_reason == "quota_exceeded"
    checkpoint = await store.load(USER_ID)
    assert checkpoint is not None
    assert checkpoint.status == RunStatus.PAUSED
    assert checkpoint.pending_ids == ["fb-4", "fb-5"]
    assert checkpoint.processed_ids == ["fb-1", "fb-2", "fb-3"]

    second = build_processor(
        persister=persister,
        store=store,
        quota=UnlimitedQuotaGate(),
        config={"batch_size": 2},
    )
    await second.hydrate_from_checkpoint(USER_ID, items)
    assert second.state.state.status == RunStatus.PAUSED

    await second.resume()

    assert sorted(set(persister.persisted_ids)) == ["fb-1", "fb-2", "fb-3", "fb-4", "fb-5"]
    assert len(persister.persisted_ids) == 5
    assert await store.load(USER_ID) is None


@pytest.mark.asyncio
async def test_delay_is_applied_between_items_but_not_after_the_last():
    sleep = RecordingSleep()
    processor = build_processor(config={"batch_size": 2, "delay_ms": 250}, sleep=sleep)

    await processor.start(USER_ID, make_items(3))

    assert sleep.delays == [250, 250]


@pytest.mark.asyncio
async def test_item_fails_after_exhausting_retry_budget():
    gateway = FakeGateway(fail_always={"fb-2"})
    persister = FakePersister()
    sleep = RecordingSleep()
    processor = build_processor(
        gateway=gateway,
        persister=persister,
        config={"max_retries": 3, "delay_ms": 0, "backoff_ms": 100, "backoff_factor": 3},
        sleep=sleep,
    )

    await processor.start(USER_ID, make_items(3))

    assert persister.persisted_ids == ["fb-1", "fb-3"]
    assert gateway.calls.count(("sentiment", "fb-2")) == 3
    assert [delay for delay in sleep.delays if delay] == [100, 300]
    report = processor.status_report()
    assert report["progress"]["failures"] == [{"id": "fb-2", "error": "service unavailable"}]
    assert report["progress"]["successful"] == 2
    assert report["run_counts"]["failed"] == 1
    assert report["run_counts"]["completed"] == 2
    assert report["counts"]["failed"] == 0


@pytest.mark.asyncio
async def test_processed_ids_in_checkpoint_are_never_persisted_again():
    store = InMemoryCheckpointStore()
    await store.save(
        Checkpoint(
            user_id=USER_ID,
            queue=[CheckpointItem(id="fb-2")],
            processed_ids=["fb-1"],
            status=RunStatus.RUNNING,
        )
    )
    persister = FakePersister()
    processor = build_processor(persister=persister, store=store)

    await processor.start(USER_ID, make_items(2))

    assert persister.persisted_ids == ["fb-2"]
    assert store.documents == {}


@pytest.mark.asyncio
async def test_active_item_from_checkpoint_is_replayed_first():
    store = InMemoryCheckpointStore()
    await store.save(
        Checkpoint(
            user_id=USER_ID,
            queue=[
                CheckpointItem(id="fb-3", status=ItemStatus.PROCESSING, attempts=1),
                CheckpointItem(id="fb-1"),
                CheckpointItem(id="fb-2"),
            ],
            status=RunStatus.RUNNING,
            active_item_id="fb-3",
        )
    )
    persister = FakePersister()
    processor = build_processor(persister=persister, store=store)

    await processor.start(USER_ID, make_items(3))

    assert persister.persisted_ids == ["fb-3", "fb-1", "fb-2"]
    assert persister.records[0].job.attempts == 2


@pytest.mark.asyncio
async def test_checkpoint_entries_without_payload_are_skipped():
    store = InMemoryCheckpointStore()
    await store.save(
        Checkpoint(
            user_id=USER_ID,
            queue=[CheckpointItem(id="ghost"), CheckpointItem(id="fb-1")],
            status=RunStatus.PAUSED,
        )
    )
    persister = FakePersister()
    processor = build_processor(persister=persister, store=store)

    await processor.start(USER_ID, make_items(1))

    assert persister.persisted_ids == ["fb-1"]
    assert store.documents == {}


@pytest.mark.asyncio
async def test_pause_stops_after_current_item_and_resume_finishes():
    store = InMemoryCheckpointStore()
    persister = FakePersister()
    processor = None

    async def pause_on_first_sleep(call_count):
        if call_count == 1:
            await processor.pause()

    processor = build_processor(
        persister=persister,
        store=store,
        config={"batch_size": 2},
        sleep=RecordingSleep(on_call=pause_on_first_sleep),
    )

    await processor.start(USER_ID, make_items(3))

    assert persister.persisted_ids == ["fb-1"]
    assert processor.stop_reason == "paused"
    checkpoint = await store.load(USER_ID)
    assert checkpoint.status == RunStatus.PAUSED
    assert checkpoint.pending_ids == ["fb-2", "fb-3"]

    await processor.resume()

    assert persister.persisted_ids == ["fb-1", "fb-2", "fb-3"]
    assert store.documents == {}


@pytest.mark.asyncio
async def test_cancel_marks_pending_items_and_deletes_checkpoint():
    store = InMemoryCheckpointStore()
    await store.save(
        Checkpoint(
            user_id=USER_ID,
            queue=[CheckpointItem(id="fb-1"), CheckpointItem(id="fb-2")],
            status=RunStatus.PAUSED,
        )
    )
    persister = FakePersister()
    processor = build_processor(persister=persister, store=store)

    await processor.hydrate_from_checkpoint(USER_ID, make_items(2))
    await processor.cancel()

    report = processor.status_report()
    assert report["counts"]["canceled"] == 2
    assert report["stop_reason"] == "canceled"
    assert persister.persisted_ids == []
    assert store.documents == {}


@pytest.mark.asyncio
async def test_summary_stage_is_skipped_when_disabled():
    gateway = FakeGateway()
    persister = FakePersister()
    processor = build_processor(
        gateway=gateway,
        persister=persister,
        config={"summarization_enabled": False},
    )

    await processor.start(USER_ID, make_items(1))

    assert ("summary", "fb-1") not in gateway.calls
    assert persister.records[0].summary is None


@pytest.mark.asyncio
async def test_analysis_record_carries_enrichment_results():
    persister = FakePersister()
    processor = build_processor(persister=persister)

    await processor.start(USER_ID, make_items(1))

    record = persister.records[0]
    assert record.id.startswith("fb-1-")
    assert record.user_id == USER_ID
    assert record.sentiment.label == "positive"
    assert record.summary == "summary of fb-1"
    assert record.tags == ["kb-1"]
    assert record.kb_match_ids == ["kb-1"]
    assert record.suggested_reply.content == "Thanks for fb-1"
    assert record.suggested_reply.model == "hf-generate"
    assert record.job.attempts == 1
    assert record.job.retry_delays == []


@pytest.mark.asyncio
async def test_checkpoint_write_failure_aborts_the_run():
    processor = build_processor(store=FailingCheckpointStore())

    with pytest.raises(CheckpointError):
        await processor.start(USER_ID, make_items(2))

    assert not processor.is_busy


@pytest.mark.asyncio
async def test_resume_requires_a_user_context():
    processor = build_processor()

    with pytest.raises(ConfigurationError):
        await processor.resume()


@pytest.mark.asyncio
async def test_start_without_pending_work_is_a_no_op():
    persister = FakePersister()
    processor = build_processor(persister=persister)

    await processor.start(USER_ID, [])

    assert persister.persisted_ids == []
    assert processor.status_report()["status"] == RunStatus.IDLE.value


@pytest.mark.asyncio
async def test_item_that_stays_rate_limited_fails_after_growing_backoff():
    gateway = FakeGateway(rate_limit_always={"fb-1"})
    persister = FakePersister()
    sleep = RecordingSleep()
    processor = build_processor(
        gateway=gateway,
        persister=persister,
        config={"max_retries": 3, "delay_ms": 0, "backoff_ms": 10, "backoff_factor": 2},
        sleep=sleep,
    )

    await processor.start(USER_ID, make_items(2))

    assert [delay for delay in sleep.delays if delay] == [10, 20, 40]
    assert gateway.calls.count(("sentiment", "fb-1")) == 3
    assert persister.persisted_ids == ["fb-2"]
    report = processor.status_report()
    assert report["progress"]["failures"] == [{"id": "fb-1", "error": "Max retries exceeded"}]
    assert report["run_counts"]["failed"] == 1
    assert processor.state.state.rate_limit_error is None


@pytest.mark.asyncio
async def test_aclose_closes_the_gateway_when_it_can():
    class ClosingGateway(FakeGateway):
        closed = False

        async def aclose(self):
            self.closed = True

    gateway = ClosingGateway()
    processor = build_processor(gateway=gateway)

    await processor.aclose()
    await build_processor().aclose()

    assert gateway.closed

"""Resumable processor driving feedback items through the enrichment stages."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from src.shared.batch.progress import ProgressTracker
from src.shared.batch.retry import compute_backoff_delay

from ..contracts.analysis import AnalysisJobMetadata, AnalysisRecord, SummaryResult
from ..contracts.checkpoint import Checkpoint
from ..contracts.config import PipelineConfig
from ..contracts.feedback import FeedbackItem, ItemStatus, RunStatus
from ..db.checkpoint_store import CheckpointStore
from ..db.result_writer import ResultPersister
from ..errors import (
    AttemptKind,
    AttemptOutcome,
    CheckpointError,
    ConfigurationError,
    QuotaExceededError,
)
from ..llm.base import EnrichmentGateway
from ..quota.gates import QuotaGate, UnlimitedQuotaGate
from ..state.store import FeedbackQueueState


SleepFn = Callable[[float], Awaitable[None]]


async def sleep_ms(milliseconds: float) -> None:
    await asyncio.sleep(milliseconds / 1000)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PipelineProcessor:
    """Runs queued feedback items one at a time with checkpointing.

    Every decision reads the current configuration and queue from the shared
    :class:`FeedbackQueueState`. A checkpoint is saved after every terminal
    item outcome, so a restart continues with exactly the items that were not
    persisted yet.
    """

    def __init__(
        self,
        *,
        gateway: EnrichmentGateway,
        persister: ResultPersister,
        checkpoint_store: CheckpointStore,
        quota: Optional[QuotaGate] = None,
        state: Optional[FeedbackQueueState] = None,
        config: Union[PipelineConfig, Mapping[str, object], None] = None,
        sleep: Optional[SleepFn] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.gateway = gateway
        self.persister = persister
        self.checkpoints = checkpoint_store
        self.quota = quota or UnlimitedQuotaGate()
        self.state = state or FeedbackQueueState()
        self._sleep = sleep or sleep_ms
        self._logger = logger or logging.getLogger(__name__)

        # Explicit settings win over whatever the state already carries.
        if isinstance(config, PipelineConfig):
            config = config.model_dump(exclude_unset=True)
        self.state.set_config(config)

        self.user_id: Optional[str] = None
        self._busy = False
        self._keep_running = False
        self._progress: Optional[ProgressTracker] = None
        self._stop_reason: Optional[str] = None
        self._run_counts: Optional[Dict[str, int]] = None

    @property
    def config(self) -> PipelineConfig:
        return self.state.config

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def stop_reason(self) -> Optional[str]:
        """Why the last run ended early: paused, canceled, quota_exceeded or quota_unavailable."""
        return self._stop_reason

    # ------------------------------------------------------------------ control

    async def hydrate_from_checkpoint(
        self,
        user_id: str,
        known_items: Iterable[FeedbackItem],
    ) -> Optional[Checkpoint]:
        """Load ``user_id``'s checkpoint into the queue state without running."""

        self.user_id = user_id
        checkpoint = await self._load_checkpoint(user_id)
        if checkpoint is None:
            self._logger.debug("No checkpoint found for user", extra={"metadata": {"user_id": user_id}})
            return None

        known_items = list(known_items)
        self._warn_missing(checkpoint, known_items)
        self.state.restore_from_checkpoint(checkpoint, known_items)
        if checkpoint.status == RunStatus.PAUSED:
            self.state.pause()
        return checkpoint

    async def start(
        self,
        user_id: str,
        items: Optional[Sequence[FeedbackItem]] = None,
        *,
        resume_from_checkpoint: bool = True,
    ) -> None:
        """Queue ``items`` (after restoring any checkpoint) and run until done or stopped."""

        self.user_id = user_id
        items = list(items or [])

        if resume_from_checkpoint:
            checkpoint = await self._load_checkpoint(user_id)
            if checkpoint is not None:
                self._logger.info(
                    "Restoring checkpoint before starting pipeline",
                    extra={
                        "metadata": {
                            "user_id": user_id,
                            "status": checkpoint.status.value,
                            "queue_size": len(checkpoint.queue),
                        }
                    },
                )
                known_items = self._collect_known_items(items)
                self._warn_missing(checkpoint, known_items)
                self.state.restore_from_checkpoint(checkpoint, known_items)

        if items:
            self.state.enqueue(items)

        await self._run()

    async def resume(self) -> None:
        if not self.user_id:
            raise ConfigurationError("Cannot resume pipeline without a user context")
        if self._busy:
            return
        self.state.resume()
        await self._run()

    async def pause(self) -> None:
        """Stop after the item in flight and checkpoint the remaining work."""

        self._keep_running = False
        self._stop_reason = "paused"
        self.state.pause()
        if self.user_id:
            await self._persist_checkpoint()

    async def cancel(self) -> None:
        """Cancel all unfinished items and delete the checkpoint."""

        self._keep_running = False
        self._stop_reason = "canceled"
        self.state.cancel()
        if self.user_id:
            await self._clear_checkpoint()

    async def aclose(self) -> None:
        """Release connections held by the gateway."""

        close = getattr(self.gateway, "aclose", None)
        if close is not None:
            await close()

    def status_report(self) -> Dict[str, Any]:
        """Return a JSON-friendly view of the queue and the current run."""

        state = self.state.state
        return {
            "user_id": self.user_id,
            "status": state.status.value,
            "busy": self._busy,
            "version": state.version,
            "queued": len(state.queue),
            "active_item_id": state.active_item_id,
            "processed_ids": list(state.processed_ids),
            "counts": state.counts(),
            "run_counts": self._run_counts,
            "rate_limit_error": state.rate_limit_error,
            "last_error": state.last_error,
            "stop_reason": self._stop_reason,
            "config": self.config.snapshot(),
            "progress": self._progress.get_stats() if self._progress else None,
        }

    # --------------------------------------------------------------- run loop

    async def _run(self) -> None:
        if not self.user_id:
            raise ConfigurationError("Pipeline requires a user context before starting")
        if self._busy:
            return
        if not self.state.state.has_pending_work:
            self._logger.debug("No pending items to process; skipping run")
            return

        self._busy = True
        self._keep_running = True
        self._stop_reason = None
        self._run_counts = None
        self.state.start()
        self.state.clear_rate_limit_error()
        self._progress = ProgressTracker(
            total_items=self._pending_count(),
            stage="feedback_enrichment",
            log_interval=max(1, self.config.batch_size),
        )
        self._logger.info(
            "Starting pipeline run",
            extra={"metadata": {"user_id": self.user_id, "pending": self._progress.total_items}},
        )

        try:
            await self._persist_checkpoint()
            while self._keep_running and self.state.state.has_pending_work:
                if self.state.state.status == RunStatus.PAUSED:
                    self._logger.info(
                        "Pipeline paused; breaking processing loop",
                        extra={"metadata": {"user_id": self.user_id}},
                    )
                    break
                batch_ids = self._collect_next_batch()
                if not batch_ids:
                    break
                await self._process_batch(batch_ids)
        finally:
            self._busy = False
            self._keep_running = False

        await self._finish_run()

    async def _process_batch(self, batch_ids: List[str]) -> None:
        try:
            for index, item_id in enumerate(batch_ids):
                if self._should_stop():
                    break

                try:
                    completed = await self._process_item(item_id)
                except CheckpointError:
                    raise
                except QuotaExceededError:
                    break
                except Exception as exc:
                    self._logger.error(
                        "Pipeline item processing failed",
                        extra={"metadata": {"user_id": self.user_id, "item_id": item_id, "error": str(exc)}},
                    )
                    completed = False

                if completed:
                    await self.quota.register_usage(1)

                if self._should_stop():
                    break

                if self._progress and self._progress.should_log():
                    self._progress.log_progress({"queued": len(self.state.state.queue)})

                if index < len(batch_ids) - 1 or self.state.state.has_pending_work:
                    await self._sleep(self.config.delay_ms)
        finally:
            # Ids the batch never finished go back to the head of the queue.
            self.state.requeue(batch_ids)

    async def _finish_run(self) -> None:
        # Item counts as the run left them; the queue state is reset below.
        self._run_counts = self.state.state.counts()
        if not self.state.state.has_pending_work:
            self.state.reset()
            await self._clear_checkpoint()
            self._logger.info("Pipeline processing completed", extra={"metadata": {"user_id": self.user_id}})
        else:
            await self._persist_checkpoint()
            self._logger.info(
                "Pipeline stopped with pending work",
                extra={
                    "metadata": {
                        "user_id": self.user_id,
                        "status": self.state.state.status.value,
                        "queued": len(self.state.state.queue),
                    }
                },
            )
        if self._progress:
            self._progress.log_summary()

    def _should_stop(self) -> bool:
        return not self._keep_running or self.state.state.status == RunStatus.PAUSED

    def _collect_next_batch(self) -> List[str]:
        ids: List[str] = []
        active = self.state.state.active_item
        if active is not None and active.is_unfinished:
            ids.append(active.item.id)

        while len(ids) < self.config.batch_size:
            next_id = self.state.dequeue()
            if next_id is None:
                break
            if next_id in ids:
                continue
            ids.append(next_id)
        return ids

    # ------------------------------------------------------------ single item

    async def _process_item(self, item_id: str) -> bool:
        """Enrich and persist one item; returns True when it completed."""

        entry = self.state.state.items.get(item_id)
        if entry is None:
            self._logger.warning(
                "Skipping unknown pipeline item",
                extra={"metadata": {"item_id": item_id, "user_id": self.user_id}},
            )
            return False
        if entry.status == ItemStatus.COMPLETED or item_id in self.state.state.processed_ids:
            self._logger.info(
                "Skipping already processed item",
                extra={"metadata": {"item_id": item_id, "user_id": self.user_id}},
            )
            return False
        if not entry.is_unfinished:
            self._logger.debug(
                "Skipping %s item", entry.status.value, extra={"metadata": {"item_id": item_id}}
            )
            return False

        feedback = entry.item
        try:
            await self.quota.ensure_within_quota(1)
        except Exception as exc:
            self.state.pause()
            self._stop_reason = "quota_exceeded" if isinstance(exc, QuotaExceededError) else "quota_unavailable"
            self._logger.error(
                "Quota exceeded while processing pipeline item",
                extra={"metadata": {"user_id": self.user_id, "item_id": item_id, "error": str(exc)}},
            )
            raise

        self.state.mark_processing(item_id)

        started_at = _now()
        retry_delays: List[float] = []
        last_error: Optional[str] = None
        attempt = entry.attempts

        while attempt < self.config.max_retries:
            attempt += 1
            self.state.record_attempt(item_id)

            outcome = await self._attempt(feedback, started_at, attempt, retry_delays, last_error)
            if outcome.kind is AttemptKind.OK:
                self.state.mark_completed(item_id)
                self.state.clear_rate_limit_error()
                if self._progress:
                    self._progress.increment(success=True)
                await self._persist_checkpoint()
                return True

            last_error = outcome.message
            self._logger.warning(
                "Pipeline attempt failed",
                extra={
                    "metadata": {
                        "user_id": self.user_id,
                        "item_id": item_id,
                        "attempt": attempt,
                        "kind": outcome.kind.value,
                        "error": last_error,
                    }
                },
            )

            if outcome.kind is AttemptKind.RATE_LIMITED:
                delay = self._next_delay(retry_delays)
                self.state.set_rate_limit_error(last_error)
                await self._sleep(delay)
                if not self._keep_running:
                    return False
                self.state.resume()
                continue

            if attempt >= self.config.max_retries:
                self._fail_item(item_id, last_error)
                await self._persist_checkpoint()
                raise outcome.error

            await self._sleep(self._next_delay(retry_delays))
            if not self._keep_running:
                return False

        self._fail_item(item_id, "Max retries exceeded")
        await self._persist_checkpoint()
        return False

    async def _attempt(
        self,
        feedback: FeedbackItem,
        started_at: str,
        attempt: int,
        retry_delays: List[float],
        last_error: Optional[str],
    ) -> AttemptOutcome:
        try:
            record = await self._enrich(feedback, started_at, attempt, retry_delays, last_error)
            await self.persister.persist(record, feedback)
        except Exception as exc:
            return AttemptOutcome.from_exception(exc)
        return AttemptOutcome.ok()

    async def _enrich(
        self,
        feedback: FeedbackItem,
        started_at: str,
        attempt: int,
        retry_delays: List[float],
        last_error: Optional[str],
    ) -> AnalysisRecord:
        sentiment = await self.gateway.analyze_sentiment(feedback)
        summary = await self._maybe_summarize(feedback, sentiment)
        kb_matches = await self.gateway.match_knowledge_base(feedback, sentiment=sentiment, summary=summary)
        suggested_reply = await self.gateway.generate_reply(
            feedback,
            sentiment=sentiment,
            summary=summary,
            kb_matches=kb_matches,
        )

        completed_at = _now()
        return AnalysisRecord(
            id=AnalysisRecord.build_id(feedback.id, completed_at),
            user_id=feedback.user_id,
            feedback_id=feedback.id,
            sentiment=sentiment,
            tags=kb_matches.tag_ids,
            kb_match_ids=kb_matches.kb_match_ids,
            suggested_reply=suggested_reply,
            summary=summary.summary if summary else None,
            job=AnalysisJobMetadata(
                started_at=started_at,
                completed_at=completed_at,
                attempts=attempt,
                retry_delays=list(retry_delays),
                last_error=last_error,
            ),
        )

    async def _maybe_summarize(self, feedback: FeedbackItem, sentiment) -> Optional[SummaryResult]:
        supported = getattr(self.gateway, "supports_summary", hasattr(self.gateway, "summarize"))
        if not self.config.summarization_enabled or not supported:
            return None
        return await self.gateway.summarize(feedback, sentiment=sentiment)

    def _next_delay(self, retry_delays: List[float]) -> float:
        delay = compute_backoff_delay(self.config.backoff_ms, self.config.backoff_factor, len(retry_delays))
        retry_delays.append(delay)
        return delay

    def _fail_item(self, item_id: str, error: str) -> None:
        self.state.mark_failed(item_id, error)
        if self._progress:
            self._progress.increment(success=False, item_id=item_id, error=error)
        self._logger.error(
            "Pipeline item failed",
            extra={"metadata": {"user_id": self.user_id, "item_id": item_id, "error": error}},
        )

    # ------------------------------------------------------------ checkpoints

    async def _load_checkpoint(self, user_id: str) -> Optional[Checkpoint]:
        try:
            return await self.checkpoints.load(user_id)
        except CheckpointError:
            raise
        except Exception as exc:
            raise CheckpointError(f"Failed to load checkpoint: {exc}", {"user_id": user_id}) from exc

    async def _persist_checkpoint(self) -> None:
        if not self.user_id:
            return
        snapshot = self.state.get_snapshot(self.user_id)
        try:
            await self.checkpoints.save(snapshot)
        except CheckpointError:
            raise
        except Exception as exc:
            raise CheckpointError(f"Failed to save checkpoint: {exc}", {"user_id": self.user_id}) from exc

    async def _clear_checkpoint(self) -> None:
        if not self.user_id:
            return
        try:
            await self.checkpoints.clear(self.user_id)
        except CheckpointError:
            raise
        except Exception as exc:
            raise CheckpointError(f"Failed to clear checkpoint: {exc}", {"user_id": self.user_id}) from exc

    # ---------------------------------------------------------------- helpers

    def _collect_known_items(self, new_items: Sequence[FeedbackItem]) -> List[FeedbackItem]:
        aggregated: Dict[str, FeedbackItem] = {
            entry.item.id: entry.item for entry in self.state.state.items.values()
        }
        for item in new_items:
            aggregated[item.id] = item
        return list(aggregated.values())

    def _warn_missing(self, checkpoint: Checkpoint, known_items: Sequence[FeedbackItem]) -> None:
        known_ids = {item.id for item in known_items}
        missing = [entry.id for entry in checkpoint.queue if entry.id not in known_ids]
        if missing:
            self._logger.warning(
                "Checkpoint references missing feedback items; they will be skipped",
                extra={"metadata": {"user_id": checkpoint.user_id, "missing_feedback": missing}},
            )

    def _pending_count(self) -> int:
        return sum(1 for entry in self.state.state.items.values() if entry.is_unfinished)

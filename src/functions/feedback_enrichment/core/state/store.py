"""Mutable holder around the immutable queue state."""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional, Sequence

from ..contracts.checkpoint import Checkpoint
from ..contracts.config import PipelineConfig
from ..contracts.feedback import FeedbackItem
from . import transitions
from .transitions import QueueState

logger = logging.getLogger(__name__)


class FeedbackQueueState:
    """Applies transitions and keeps the latest ``QueueState``.

    Each method replaces :attr:`state` with the transition's result, so a
    reader always sees a consistent value and can detect change through
    ``state.version``.
    """

    def __init__(self, state: Optional[QueueState] = None, *, config: Optional[PipelineConfig] = None):
        self._state = state or transitions.initial_state(config)

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def config(self) -> PipelineConfig:
        return self._state.config

    def _apply(self, new_state: QueueState) -> QueueState:
        self._state = new_state
        return new_state

    def enqueue(self, items: Iterable[FeedbackItem]) -> QueueState:
        return self._apply(transitions.enqueue(self._state, items))

    def dequeue(self) -> Optional[str]:
        new_state, item_id = transitions.dequeue(self._state)
        self._apply(new_state)
        return item_id

    def mark_processing(self, item_id: str) -> QueueState:
        return self._apply(transitions.mark_processing(self._state, item_id))

    def mark_pending(self, item_id: str) -> QueueState:
        return self._apply(transitions.mark_pending(self._state, item_id))

    def record_attempt(self, item_id: str) -> QueueState:
        return self._apply(transitions.record_attempt(self._state, item_id))

    def mark_completed(self, item_id: str) -> QueueState:
        return self._apply(transitions.mark_completed(self._state, item_id))

    def mark_failed(self, item_id: str, error: str) -> QueueState:
        return self._apply(transitions.mark_failed(self._state, item_id, error))

    def cancel(self, item_id: Optional[str] = None) -> QueueState:
        return self._apply(transitions.cancel(self._state, item_id))

    def remove(self, item_id: str) -> QueueState:
        return self._apply(transitions.remove(self._state, item_id))

    def requeue(self, item_ids: Sequence[str]) -> QueueState:
        return self._apply(transitions.requeue(self._state, item_ids))

    def start(self) -> QueueState:
        return self._apply(transitions.start(self._state))

    def pause(self) -> QueueState:
        return self._apply(transitions.pause(self._state))

    def resume(self) -> QueueState:
        return self._apply(transitions.resume(self._state))

    def reset(self) -> QueueState:
        return self._apply(transitions.reset(self._state))

    def set_config(self, partial: Optional[Mapping[str, object]]) -> QueueState:
        return self._apply(transitions.set_config(self._state, partial))

    def set_rate_limit_error(self, message: str) -> QueueState:
        return self._apply(transitions.set_rate_limit_error(self._state, message))

    def clear_rate_limit_error(self) -> QueueState:
        return self._apply(transitions.clear_rate_limit_error(self._state))

    def get_snapshot(self, user_id: str) -> Checkpoint:
        return transitions.snapshot(self._state, user_id)

    def restore_from_checkpoint(
        self,
        checkpoint: Checkpoint,
        known_items: Iterable[FeedbackItem],
    ) -> QueueState:
        restored = self._apply(
            transitions.restore_from_checkpoint(self._state, checkpoint, known_items)
        )
        logger.debug(
            "Restored queue state from checkpoint",
            extra={
                "metadata": {
                    "user_id": checkpoint.user_id,
                    "queued": len(restored.queue),
                    "processed": len(restored.processed_ids),
                    "active_item_id": restored.active_item_id,
                }
            },
        )
        return restored

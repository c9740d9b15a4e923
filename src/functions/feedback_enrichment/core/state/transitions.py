"""Queue state value and the pure transitions applied to it.

``QueueState`` is immutable. Every transition takes a state plus an event and
returns a new state with ``version`` incremented; transitions that reference
an unknown feedback id return the state unchanged. Callers that need to
observe progress compare versions instead of subscribing to changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..contracts.checkpoint import Checkpoint, CheckpointItem
from ..contracts.config import PipelineConfig
from ..contracts.feedback import FeedbackItem, ItemStatus, RunStatus

UNFINISHED = (ItemStatus.PENDING, ItemStatus.PROCESSING)
RESUBMITTABLE = (ItemStatus.FAILED, ItemStatus.CANCELED)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class PipelineItemState:
    item: FeedbackItem
    status: ItemStatus = ItemStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    last_updated_at: str = field(default_factory=_timestamp)

    @property
    def is_unfinished(self) -> bool:
        return self.status in UNFINISHED

    def to_checkpoint_item(self) -> CheckpointItem:
        return CheckpointItem(
            id=self.item.id,
            status=self.status,
            attempts=self.attempts,
            error=self.error,
        )


@dataclass(frozen=True)
class QueueState:
    """Snapshot of everything the processor knows about one user's run."""

    items: Mapping[str, PipelineItemState] = field(default_factory=lambda: MappingProxyType({}))
    queue: Tuple[str, ...] = ()
    processed_ids: Tuple[str, ...] = ()
    status: RunStatus = RunStatus.IDLE
    active_item_id: Optional[str] = None
    config: PipelineConfig = field(default_factory=PipelineConfig)
    last_error: Optional[str] = None
    rate_limit_error: Optional[str] = None
    version: int = 0

    @property
    def active_item(self) -> Optional[PipelineItemState]:
        if self.active_item_id is None:
            return None
        return self.items.get(self.active_item_id)

    @property
    def has_pending_work(self) -> bool:
        """True while the queue or the active item still holds work."""

        active = self.active_item
        return bool(self.queue) or (active is not None and active.is_unfinished)

    def counts(self) -> Dict[str, int]:
        totals = {status.value: 0 for status in ItemStatus}
        for entry in self.items.values():
            totals[entry.status.value] += 1
        return totals


def initial_state(config: Optional[PipelineConfig] = None) -> QueueState:
    return QueueState(config=config or PipelineConfig())


def _commit(state: QueueState, **changes) -> QueueState:
    if "items" in changes:
        changes["items"] = MappingProxyType(dict(changes["items"]))
    return replace(state, version=state.version + 1, **changes)


def _update_item(
    state: QueueState,
    item_id: str,
    **changes,
) -> Optional[Dict[str, PipelineItemState]]:
    current = state.items.get(item_id)
    if current is None:
        return None
    items = dict(state.items)
    items[item_id] = replace(current, last_updated_at=_timestamp(), **changes)
    return items


def enqueue(state: QueueState, feedback_items: Iterable[FeedbackItem]) -> QueueState:
    """Register items and append new pending ids to the tail in input order.

    Known failed or canceled items count as an explicit re-submission and
    restart as pending with zero attempts. Completed items are never queued
    again, and ids that are queued or active already keep their place.
    """
    items = dict(state.items)
    queue = list(state.queue)
    queued = set(queue)
    processed = set(state.processed_ids)
    timestamp = _timestamp()

    for feedback in feedback_items:
        existing = items.get(feedback.id)
        if existing is None:
            entry = PipelineItemState(item=feedback, last_updated_at=timestamp)
        elif existing.status in RESUBMITTABLE:
            entry = PipelineItemState(item=feedback, last_updated_at=timestamp)
        else:
            entry = replace(existing, item=feedback)
        items[feedback.id] = entry

        if (
            entry.status == ItemStatus.PENDING
            and feedback.id not in processed
            and feedback.id not in queued
            and feedback.id != state.active_item_id
        ):
            queue.append(feedback.id)
            queued.add(feedback.id)

    return _commit(state, items=items, queue=tuple(queue))


def dequeue(state: QueueState) -> Tuple[QueueState, Optional[str]]:
    """Pop the head of the queue and make it the active item."""
    if not state.queue:
        return state, None
    next_id = state.queue[0]
    return _commit(state, queue=state.queue[1:], active_item_id=next_id), next_id


def mark_processing(state: QueueState, item_id: str) -> QueueState:
    items = _update_item(state, item_id, status=ItemStatus.PROCESSING)
    if items is None:
        return state
    return _commit(state, items=items, active_item_id=item_id)


def mark_pending(state: QueueState, item_id: str) -> QueueState:
    items = _update_item(state, item_id, status=ItemStatus.PENDING)
    if items is None:
        return state
    return _commit(state, items=items)


def record_attempt(state: QueueState, item_id: str) -> QueueState:
    current = state.items.get(item_id)
    if current is None:
        return state
    items = _update_item(state, item_id, attempts=current.attempts + 1)
    return _commit(state, items=items)


def mark_completed(state: QueueState, item_id: str) -> QueueState:
    """Record a successful outcome and append the id to the processed ledger."""
    items = _update_item(state, item_id, status=ItemStatus.COMPLETED, error=None)
    if items is None:
        return state

    processed = state.processed_ids
    if item_id not in processed:
        processed = processed + (item_id,)
    queue = tuple(entry for entry in state.queue if entry != item_id)
    active_item_id = None if state.active_item_id == item_id else state.active_item_id

    status = state.status
    if not queue and all(entry.status == ItemStatus.COMPLETED for entry in items.values()):
        status = RunStatus.IDLE

    return _commit(
        state,
        items=items,
        queue=queue,
        processed_ids=processed,
        active_item_id=active_item_id,
        last_error=None,
        status=status,
    )


def mark_failed(state: QueueState, item_id: str, error: str) -> QueueState:
    """Record a terminal failure; the item is not queued again."""
    items = _update_item(state, item_id, status=ItemStatus.FAILED, error=error)
    if items is None:
        return state
    return _commit(
        state,
        items=items,
        queue=tuple(entry for entry in state.queue if entry != item_id),
        active_item_id=None if state.active_item_id == item_id else state.active_item_id,
        last_error=error,
    )


def cancel(state: QueueState, item_id: Optional[str] = None) -> QueueState:
    """Cancel one item, or every unfinished item when ``item_id`` is None."""
    if item_id is not None:
        items = _update_item(state, item_id, status=ItemStatus.CANCELED)
        if items is None:
            return state
        return _commit(
            state,
            items=items,
            queue=tuple(entry for entry in state.queue if entry != item_id),
            active_item_id=None if state.active_item_id == item_id else state.active_item_id,
        )

    timestamp = _timestamp()
    items = {
        key: (
            replace(entry, status=ItemStatus.CANCELED, last_updated_at=timestamp)
            if entry.is_unfinished
            else entry
        )
        for key, entry in state.items.items()
    }
    return _commit(
        state,
        items=items,
        queue=(),
        active_item_id=None,
        status=RunStatus.IDLE,
    )


def remove(state: QueueState, item_id: str) -> QueueState:
    """Forget an item entirely."""
    if item_id not in state.items:
        return state
    items = {key: entry for key, entry in state.items.items() if key != item_id}
    return _commit(
        state,
        items=items,
        queue=tuple(entry for entry in state.queue if entry != item_id),
        processed_ids=tuple(entry for entry in state.processed_ids if entry != item_id),
        active_item_id=None if state.active_item_id == item_id else state.active_item_id,
    )


def requeue(state: QueueState, item_ids: Sequence[str]) -> QueueState:
    """Put interrupted ids back at the head of the queue, keeping their order.

    Only ids that are still unfinished and not in the processed ledger are
    requeued; they return to pending with their attempt counts intact.
    """
    processed = set(state.processed_ids)
    restored: List[str] = []
    for item_id in item_ids:
        entry = state.items.get(item_id)
        if entry is None or not entry.is_unfinished or item_id in processed:
            continue
        if item_id not in restored:
            restored.append(item_id)
    if not restored:
        return state

    timestamp = _timestamp()
    items = dict(state.items)
    for item_id in restored:
        items[item_id] = replace(items[item_id], status=ItemStatus.PENDING, last_updated_at=timestamp)
    tail = tuple(entry for entry in state.queue if entry not in restored)
    active_item_id = None if state.active_item_id in restored else state.active_item_id
    return _commit(
        state,
        items=items,
        queue=tuple(restored) + tail,
        active_item_id=active_item_id,
    )


def start(state: QueueState) -> QueueState:
    return _commit(state, status=RunStatus.RUNNING)


def pause(state: QueueState) -> QueueState:
    return _commit(state, status=RunStatus.PAUSED)


def resume(state: QueueState) -> QueueState:
    status = RunStatus.RUNNING if state.has_pending_work else state.status
    return _commit(state, status=status, rate_limit_error=None)


def reset(state: QueueState) -> QueueState:
    """Clear everything except configuration."""
    return replace(initial_state(state.config), version=state.version + 1)


def set_config(state: QueueState, partial: Optional[Mapping[str, object]]) -> QueueState:
    return _commit(state, config=state.config.merged(dict(partial or {})))


def set_rate_limit_error(state: QueueState, message: str) -> QueueState:
    return _commit(state, rate_limit_error=message, status=RunStatus.PAUSED)


def clear_rate_limit_error(state: QueueState) -> QueueState:
    if state.rate_limit_error is None:
        return state
    return _commit(state, rate_limit_error=None)


def snapshot(state: QueueState, user_id: str) -> Checkpoint:
    """Build the checkpoint for ``user_id``.

    Order: the active item, then items that were dequeued into the current
    batch but are not finished yet, then the queue.
    """
    ordered: List[str] = []
    active = state.active_item
    if active is not None:
        ordered.append(active.item.id)

    queued = set(state.queue)
    processed = set(state.processed_ids)
    for item_id, entry in state.items.items():
        if (
            entry.is_unfinished
            and item_id not in queued
            and item_id not in processed
            and item_id not in ordered
        ):
            ordered.append(item_id)

    for item_id in state.queue:
        if item_id not in ordered:
            ordered.append(item_id)

    return Checkpoint(
        user_id=user_id,
        queue=[state.items[item_id].to_checkpoint_item() for item_id in ordered if item_id in state.items],
        processed_ids=list(state.processed_ids),
        status=state.status,
        active_item_id=state.active_item_id,
        updated_at=datetime.now(timezone.utc),
        error=state.last_error,
    )


def restore_from_checkpoint(
    state: QueueState,
    checkpoint: Checkpoint,
    known_items: Iterable[FeedbackItem],
) -> QueueState:
    """Rebuild items and queue from ``checkpoint``.

    Entries without a known payload are dropped, a dangling active id included.
    The processed ledger is kept in full so those ids are never processed
    again; ledger ids with a payload come back as completed.
    """
    feedback_by_id = {item.id: item for item in known_items}
    timestamp = _timestamp()
    processed_ids = tuple(dict.fromkeys(checkpoint.processed_ids))
    processed = set(processed_ids)

    items: Dict[str, PipelineItemState] = {}
    queue: List[str] = []
    for entry in checkpoint.queue:
        feedback = feedback_by_id.get(entry.id)
        if feedback is None or entry.id in processed or entry.id in items:
            continue
        status = ItemStatus.PENDING if entry.status in UNFINISHED else entry.status
        items[entry.id] = PipelineItemState(
            item=feedback,
            status=status,
            attempts=entry.attempts,
            error=entry.error,
            last_updated_at=timestamp,
        )
        if status == ItemStatus.PENDING:
            queue.append(entry.id)

    for item_id in processed_ids:
        feedback = feedback_by_id.get(item_id)
        if feedback is not None and item_id not in items:
            items[item_id] = PipelineItemState(
                item=feedback,
                status=ItemStatus.COMPLETED,
                attempts=1,
                last_updated_at=timestamp,
            )

    active_item_id = checkpoint.active_item_id
    if active_item_id is not None:
        active = items.get(active_item_id)
        if active is None or not active.is_unfinished:
            active_item_id = None
        else:
            queue = [item_id for item_id in queue if item_id != active_item_id]

    # No loop survives a restart; a stored "running" resumes as idle.
    status = RunStatus.PAUSED if checkpoint.status == RunStatus.PAUSED else RunStatus.IDLE

    return _commit(
        state,
        items=items,
        queue=tuple(queue),
        processed_ids=processed_ids,
        status=status,
        active_item_id=active_item_id,
        last_error=checkpoint.error,
        rate_limit_error=None,
    )

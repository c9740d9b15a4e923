"""Queue state for the feedback enrichment pipeline."""

from .store import FeedbackQueueState
from .transitions import PipelineItemState, QueueState, initial_state

__all__ = ["FeedbackQueueState", "PipelineItemState", "QueueState", "initial_state"]

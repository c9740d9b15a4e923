"""Data contracts for the feedback enrichment pipeline."""

from .analysis import (
    AnalysisJobMetadata,
    AnalysisRecord,
    KnowledgeBaseMatch,
    KnowledgeBaseMatchResult,
    SentimentResult,
    SuggestedReply,
    SummaryResult,
)
from .checkpoint import Checkpoint, CheckpointItem
from .config import (
    EnrichmentServiceConfig,
    OpenAISettings,
    PipelineConfig,
    ServiceEndpointConfig,
    SupabaseSettings,
)
from .feedback import FeedbackItem, ItemStatus, RunStatus

__all__ = [
    "AnalysisJobMetadata",
    "AnalysisRecord",
    "Checkpoint",
    "CheckpointItem",
    "EnrichmentServiceConfig",
    "FeedbackItem",
    "ItemStatus",
    "KnowledgeBaseMatch",
    "KnowledgeBaseMatchResult",
    "OpenAISettings",
    "PipelineConfig",
    "RunStatus",
    "SentimentResult",
    "ServiceEndpointConfig",
    "SuggestedReply",
    "SummaryResult",
    "SupabaseSettings",
]

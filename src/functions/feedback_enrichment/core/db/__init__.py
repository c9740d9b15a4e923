"""Database access layer for feedback enrichment."""

from .checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    SupabaseCheckpointStore,
)
from .client import build_supabase_client
from .result_writer import ResultPersister, SupabaseResultPersister

__all__ = [
    "CheckpointStore",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "SupabaseCheckpointStore",
    "ResultPersister",
    "SupabaseResultPersister",
    "build_supabase_client",
]

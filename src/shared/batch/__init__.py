"""Shared batch processing infrastructure.

Provides generic utilities for resumable batch pipelines:
- JsonDocumentStore: One JSON document per key with atomic writes
- ProgressTracker: Processing progress, error counts and failure list
- compute_backoff_delay: Exponential retry delays

Usage:
    from src.shared.batch import JsonDocumentStore, ProgressTracker
    from src.shared.batch import compute_backoff_delay
"""

from .checkpoint import JsonDocumentStore
from .progress import ProgressTracker
from .retry import compute_backoff_delay

__all__ = [
    "JsonDocumentStore",
    "ProgressTracker",
    "compute_backoff_delay",
]

"""
Feedback Enrichment Module

Drives customer feedback items through sentiment analysis, optional
summarisation, knowledge-base matching and reply generation. Runs are
resumable: progress is checkpointed per user so a paused, throttled or
crashed run continues where it stopped, and every item is persisted at most
once.

This module is independent and can be deleted without affecting other modules.
"""

__version__ = "1.0.0"

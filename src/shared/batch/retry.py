"""Exponential backoff helpers shared by retrying pipelines."""

from __future__ import annotations


def compute_backoff_delay(base_ms: float, factor: float, retry_count: int) -> float:
    """Return the wait in milliseconds before retry number ``retry_count``.

    The first retry (``retry_count=0``) waits ``base_ms``; every further retry
    multiplies the wait by ``factor``.

    Args:
        base_ms: Initial delay in milliseconds
        factor: Multiplier applied per retry (1 keeps the delay constant)
        retry_count: Number of retries already scheduled for this unit of work

    Raises:
        ValueError: If ``retry_count`` is negative

    Example:
        >>> compute_backoff_delay(1000, 2, 0)
        1000
        >>> compute_backoff_delay(1000, 2, 3)
        8000
    """
    if retry_count < 0:
        raise ValueError("retry_count cannot be negative")
    return base_ms * factor ** retry_count

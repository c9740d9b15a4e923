"""Quota gates for the feedback enrichment pipeline."""

from .gates import (
    DEFAULT_MONTHLY_QUOTA,
    QuotaGate,
    SimpleQuotaGate,
    SupabaseUserQuotaGate,
    UnlimitedQuotaGate,
    UserQuota,
)

__all__ = [
    "DEFAULT_MONTHLY_QUOTA",
    "QuotaGate",
    "SimpleQuotaGate",
    "SupabaseUserQuotaGate",
    "UnlimitedQuotaGate",
    "UserQuota",
]

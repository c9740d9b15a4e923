"""Admission control over a user's monthly processing budget."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from ..db.client import response_rows
from ..errors import ConfigurationError, QuotaExceededError

logger = logging.getLogger(__name__)

DEFAULT_MONTHLY_QUOTA = 30


class QuotaGate(Protocol):
    async def ensure_within_quota(self, count: int) -> None:
        """Raise :class:`QuotaExceededError` if ``count`` more items do not fit."""

    async def register_usage(self, count: int) -> None:
        """Record ``count`` completed items against the budget."""


class UnlimitedQuotaGate:
    """Gate used when no budget applies; admits everything."""

    async def ensure_within_quota(self, count: int) -> None:
        return None

    async def register_usage(self, count: int) -> None:
        return None


class SimpleQuotaGate:
    """In-process counter against a fixed monthly limit."""

    def __init__(self, monthly_limit: int, initial_usage: int = 0) -> None:
        self.limit = monthly_limit
        self.usage = max(0, initial_usage)

    async def ensure_within_quota(self, count: int) -> None:
        if self.limit <= 0:
            raise ConfigurationError("Monthly quota limit is not configured", {"limit": self.limit})
        if self.usage + count > self.limit:
            raise QuotaExceededError(
                "Monthly quota exceeded",
                {"limit": self.limit, "usage": self.usage, "requested": count},
            )

    async def register_usage(self, count: int) -> None:
        self.usage += count


def start_of_month(reference: datetime) -> datetime:
    """Midnight UTC on the first day of ``reference``'s month."""

    reference = reference.astimezone(timezone.utc)
    return datetime(reference.year, reference.month, 1, tzinfo=timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class UserQuota:
    """Quota counters stored on a user record."""

    user_id: str
    monthly_quota: int = DEFAULT_MONTHLY_QUOTA
    processed_this_month: int = 0
    quota_reset_at: Optional[datetime] = None
    is_subscriber: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserQuota":
        monthly_quota = row.get("monthly_quota")
        return cls(
            user_id=str(row["id"]),
            monthly_quota=DEFAULT_MONTHLY_QUOTA if monthly_quota is None else int(monthly_quota),
            processed_this_month=max(0, int(row.get("processed_this_month") or 0)),
            quota_reset_at=_parse_timestamp(row.get("quota_reset_at")),
            is_subscriber=bool(row.get("is_subscriber", False)),
        )

    def reset_if_needed(self, reference: Optional[datetime] = None) -> "UserQuota":
        """Zero the counter when ``quota_reset_at`` is not in the current month."""

        reference = reference or datetime.now(timezone.utc)
        month_start = start_of_month(reference)
        if self.quota_reset_at is not None and start_of_month(self.quota_reset_at) == month_start:
            return self
        return replace(self, processed_this_month=0, quota_reset_at=month_start)

    def remaining(self) -> float:
        if self.is_subscriber:
            return float("inf")
        return max(0, self.monthly_quota - self.processed_this_month)

    def is_available(self, count: int = 1) -> bool:
        return self.is_subscriber or self.processed_this_month + count <= self.monthly_quota


class SupabaseUserQuotaGate:
    """Quota gate backed by the per-user counters in Supabase.

    Subscribers are never limited. The monthly counter resets lazily on the
    first check in a new calendar month (UTC).
    """

    def __init__(self, client, user_id: str, *, table: str = "users") -> None:
        self.client = client
        self.user_id = user_id
        self.table = table

    def _load(self) -> UserQuota:
        response = (
            self.client.table(self.table)
            .select("id, monthly_quota, processed_this_month, quota_reset_at, is_subscriber")
            .eq("id", self.user_id)
            .limit(1)
            .execute()
        )
        rows = response_rows(response)
        if not rows:
            raise ConfigurationError("User record not found for quota check", {"user_id": self.user_id})
        return UserQuota.from_row(rows[0])

    def _store(self, quota: UserQuota) -> None:
        (
            self.client.table(self.table)
            .update(
                {
                    "processed_this_month": quota.processed_this_month,
                    "quota_reset_at": quota.quota_reset_at.isoformat() if quota.quota_reset_at else None,
                }
            )
            .eq("id", self.user_id)
            .execute()
        )

    def _check(self, count: int) -> None:
        current = self._load()
        quota = current.reset_if_needed()
        if quota != current:
            self._store(quota)
        if not quota.is_available(count):
            raise QuotaExceededError(
                "Monthly quota exceeded",
                {
                    "user_id": self.user_id,
                    "limit": quota.monthly_quota,
                    "usage": quota.processed_this_month,
                    "requested": count,
                },
            )

    def _increment(self, count: int) -> None:
        if count <= 0:
            return
        quota = self._load().reset_if_needed()
        quota = replace(quota, processed_this_month=quota.processed_this_month + count)
        self._store(quota)
        logger.debug(
            "Registered quota usage",
            extra={"metadata": {"user_id": self.user_id, "usage": quota.processed_this_month}},
        )

    async def ensure_within_quota(self, count: int) -> None:
        await asyncio.to_thread(self._check, count)

    async def register_usage(self, count: int) -> None:
        await asyncio.to_thread(self._increment, count)

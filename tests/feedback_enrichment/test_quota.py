from datetime import datetime, timezone

import pytest

from src.functions.feedback_enrichment.core.errors import ConfigurationError, QuotaExceededError
from src.functions.feedback_enrichment.core.quota.gates import (
    DEFAULT_MONTHLY_QUOTA,
    SimpleQuotaGate,
    SupabaseUserQuotaGate,
    UserQuota,
    start_of_month,
)


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, table):
        self._table = table
        self._update = None

    def select(self, *_args, **_kwargs):
        return self

    def update(self, values):
        self._update = values
        return self

    def eq(self, *_args):
        return self

    def limit(self, *_args):
        return self

    def execute(self):
        if self._update is not None:
            self._table.row.update(self._update)
            self._table.updates.append(dict(self._update))
            return FakeResponse([self._table.row])
        return FakeResponse([dict(self._table.row)] if self._table.row else [])


class FakeUserTable:
    def __init__(self, row):
        self.row = row
        self.updates = []


class FakeSupabaseClient:
    def __init__(self, row=None):
        self.users = FakeUserTable(row)

    def table(self, name):
        assert name == "users"
        return FakeQuery(self.users)


def current_month_start():
    return start_of_month(datetime.now(timezone.utc)).isoformat()


@pytest.mark.asyncio
async def test_simple_gate_rejects_work_beyond_the_limit():
    gate = SimpleQuotaGate(2)

    await gate.ensure_within_quota(1)
    await gate.register_usage(2)

    with pytest.raises(QuotaExceededError) as exc_info:
        await gate.ensure_within_quota(1)

    assert exc_info.value.metadata == {"limit": 2, "usage": 2, "requested": 1}


@pytest.mark.asyncio
async def test_simple_gate_requires_a_positive_limit():
    gate = SimpleQuotaGate(0)

    with pytest.raises(ConfigurationError):
        await gate.ensure_within_quota(1)


def test_start_of_month_normalises_to_utc_midnight():
    reference = datetime(2024, 5, 17, 13, 45, tzinfo=timezone.utc)

    assert start_of_month(reference) == datetime(2024, 5, 1, tzinfo=timezone.utc)


def test_user_quota_resets_when_reset_date_is_in_an_earlier_month():
    quota = UserQuota.from_row(
        {
            "id": "user-1",
            "monthly_quota": 10,
            "processed_this_month": 7,
            "quota_reset_at": "2024-04-01T00:00:00Z",
        }
    )

    refreshed = quota.reset_if_needed(datetime(2024, 5, 3, tzinfo=timezone.utc))

    assert refreshed.processed_this_month == 0
    assert refreshed.quota_reset_at == datetime(2024, 5, 1, tzinfo=timezone.utc)


def test_user_quota_defaults_and_subscriber_exemption():
    quota = UserQuota.from_row({"id": "user-1", "processed_this_month": None})
    subscriber = UserQuota.from_row(
        {"id": "user-2", "monthly_quota": 1, "processed_this_month": 50, "is_subscriber": True}
    )

    assert quota.monthly_quota == DEFAULT_MONTHLY_QUOTA
    assert quota.remaining() == DEFAULT_MONTHLY_QUOTA
    assert subscriber.is_available(10)
    assert subscriber.remaining() == float("inf")


@pytest.mark.asyncio
async def test_supabase_gate_counts_usage_within_the_month():
    client = FakeSupabaseClient(
        {
            "id": "user-1",
            "monthly_quota": 3,
            "processed_this_month": 2,
            "quota_reset_at": current_month_start(),
            "is_subscriber": False,
        }
    )
    gate = SupabaseUserQuotaGate(client, "user-1")

    await gate.ensure_within_quota(1)
    await gate.register_usage(1)

    assert client.users.row["processed_this_month"] == 3
    with pytest.raises(QuotaExceededError):
        await gate.ensure_within_quota(1)


@pytest.mark.asyncio
async def test_supabase_gate_resets_stale_counters_before_checking():
    client = FakeSupabaseClient(
        {
            "id": "user-1",
            "monthly_quota": 3,
            "processed_this_month": 3,
            "quota_reset_at": "2000-01-01T00:00:00+00:00",
            "is_subscriber": False,
        }
    )
    gate = SupabaseUserQuotaGate(client, "user-1")

    await gate.ensure_within_quota(1)

    assert client.users.updates[0]["processed_this_month"] == 0
    assert client.users.updates[0]["quota_reset_at"] == current_month_start()


@pytest.mark.asyncio
async def test_supabase_gate_requires_a_user_record():
    gate = SupabaseUserQuotaGate(FakeSupabaseClient(None), "missing")

    with pytest.raises(ConfigurationError):
        await gate.ensure_within_quota(1)

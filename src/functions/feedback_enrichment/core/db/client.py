"""Supabase client construction for the feedback enrichment stores."""

from __future__ import annotations

from src.shared.db.connection import SupabaseConfig, get_supabase_client

from ..contracts.config import SupabaseSettings


def build_supabase_client(settings: SupabaseSettings):
    """Return a Supabase client scoped to the configured schema."""

    config = SupabaseConfig(
        url=str(settings.url),
        key=settings.key,
        schema=settings.schema_name,
    )
    return get_supabase_client(config)


def response_rows(response) -> list:
    """Return the ``data`` rows of a PostgREST response as a list."""

    data = getattr(response, "data", None)
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    return list(data)

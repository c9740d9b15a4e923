"""Shared Supabase connection utilities.

This module provides generic Supabase client creation used by the
checkpoint store, quota gate and result persister.
"""

from __future__ import annotations
import os
import logging
from dataclasses import dataclass
from typing import Optional

from src.shared.utils.config_validator import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class SupabaseConfig:
    """Configuration for Supabase connection.

    Attributes:
        url: Supabase project URL
        key: Supabase API key (anon or service role)
        schema: Database schema to use (default: public)
    """
    url: str
    key: str
    schema: str = "public"

    @classmethod
    def from_env(
        cls,
        url_var: str = "SUPABASE_URL",
        key_var: str = "SUPABASE_KEY",
        schema_var: str = "SUPABASE_SCHEMA"
    ) -> SupabaseConfig:
        """Create configuration from environment variables.

        Raises:
            ConfigurationError: If required environment variables are not set
        """
        url = os.getenv(url_var)
        key = os.getenv(key_var)
        schema = os.getenv(schema_var, "public")

        if not url or not key:
            raise ConfigurationError(
                f"Missing required environment variables: {url_var} and/or {key_var}. "
                f"Please set them in your .env file or environment."
            )

        return cls(url=url, key=key, schema=schema)


def get_supabase_client(config: Optional[SupabaseConfig] = None):
    """Create Supabase client.

    Args:
        config: Optional SupabaseConfig. If None, loads from environment.

    Returns:
        Supabase client instance, scoped to ``config.schema`` when it is not public

    Example:
        >>> client = get_supabase_client()
        >>> response = client.table("pipeline_checkpoints").select("*").execute()
    """
    from supabase import create_client

    if config is None:
        config = SupabaseConfig.from_env()

    logger.debug("Creating Supabase client for %s", config.url)

    client = create_client(config.url, config.key)

    if config.schema and config.schema != "public":
        schema_fn = getattr(client, "schema", None)
        if callable(schema_fn):
            client = schema_fn(config.schema)
            logger.debug("Using schema: %s", config.schema)
        else:
            logger.warning(
                "Supabase client does not support schema override; continuing with default schema"
            )

    return client

"""Utility helpers to construct pipeline configuration from the environment."""

from __future__ import annotations

import logging
import os
from typing import Dict, Optional

from src.shared.utils.config_validator import (
    ConfigurationError as SharedConfigurationError,
    require_env,
    validate_bool_env,
    validate_float_env,
    validate_int_env,
)

from ..contracts.config import (
    EnrichmentServiceConfig,
    OpenAISettings,
    PipelineConfig,
    ServiceEndpointConfig,
    SupabaseSettings,
)
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

STAGE_PREFIXES = {
    "sentiment": "ENRICHMENT_SENTIMENT",
    "summarization": "ENRICHMENT_SUMMARIZATION",
    "knowledge_base": "ENRICHMENT_KNOWLEDGE_BASE",
    "reply_generation": "ENRICHMENT_REPLY_GENERATION",
}


def _reraise(exc: SharedConfigurationError) -> ConfigurationError:
    if isinstance(exc, ConfigurationError):
        return exc
    return ConfigurationError(str(exc))


def build_pipeline_config(overrides: Optional[Dict[str, object]] = None) -> PipelineConfig:
    """Build run settings from ``overrides`` first, then ``FEEDBACK_*`` variables."""

    overrides = overrides or {}
    defaults = PipelineConfig()
    try:
        values = {
            "batch_size": validate_int_env("FEEDBACK_BATCH_SIZE", defaults.batch_size, min_value=1),
            "delay_ms": validate_float_env("FEEDBACK_DELAY_MS", defaults.delay_ms, min_value=0),
            "summarization_enabled": validate_bool_env(
                "FEEDBACK_SUMMARIZATION_ENABLED", defaults.summarization_enabled
            ),
            "max_retries": validate_int_env("FEEDBACK_MAX_RETRIES", defaults.max_retries, min_value=1),
            "backoff_ms": validate_float_env("FEEDBACK_BACKOFF_MS", defaults.backoff_ms, min_value=0),
            "backoff_factor": validate_float_env(
                "FEEDBACK_BACKOFF_FACTOR", defaults.backoff_factor, min_value=1
            ),
        }
    except SharedConfigurationError as exc:
        raise _reraise(exc) from exc

    return defaults.merged({**values, **overrides})


def build_service_config(overrides: Optional[Dict[str, object]] = None) -> EnrichmentServiceConfig:
    overrides = overrides or {}
    endpoints = {
        attribute: _build_endpoint(prefix, overrides.get(attribute))
        for attribute, prefix in STAGE_PREFIXES.items()
    }
    return EnrichmentServiceConfig(**endpoints)


def build_supabase_settings(overrides: Optional[Dict[str, object]] = None) -> SupabaseSettings:
    """Build Supabase settings with validation."""
    overrides = overrides or {}
    try:
        url = overrides.get("url") or require_env("SUPABASE_URL", "Supabase project URL")
        key = overrides.get("key") or require_env("SUPABASE_KEY", "Supabase service role key")
    except SharedConfigurationError as exc:
        raise ConfigurationError(
            f"{exc}\nRequired for Supabase checkpoints, quota and persistence. "
            "See .env.example for configuration template."
        ) from exc

    return SupabaseSettings(
        url=url,
        key=key,
        schema=overrides.get("schema") or os.getenv("SUPABASE_SCHEMA", "public"),
        checkpoint_table=overrides.get("checkpoint_table")
        or os.getenv("FEEDBACK_CHECKPOINT_TABLE", "pipeline_checkpoints"),
        user_table=overrides.get("user_table") or os.getenv("FEEDBACK_USER_TABLE", "users"),
        persist_function=overrides.get("persist_function")
        or os.getenv("FEEDBACK_PERSIST_FUNCTION", "persist_feedback_analysis"),
    )


def build_openai_settings(overrides: Optional[Dict[str, object]] = None) -> Optional[OpenAISettings]:
    """Return OpenAI settings, or None when no API key is configured."""

    overrides = overrides or {}
    api_key = overrides.get("api_key") or os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None
    return OpenAISettings(
        api_key=api_key,
        model=overrides.get("model") or os.getenv("FEEDBACK_OPENAI_MODEL", "gpt-4o-mini"),
    )


def monthly_quota_from_env() -> Optional[int]:
    """Return ``FEEDBACK_MONTHLY_QUOTA`` or None when unset."""

    if not os.getenv("FEEDBACK_MONTHLY_QUOTA"):
        return None
    try:
        return validate_int_env("FEEDBACK_MONTHLY_QUOTA")
    except SharedConfigurationError as exc:
        raise _reraise(exc) from exc


def _build_endpoint(prefix: str, override: Optional[Dict[str, object]]) -> Optional[ServiceEndpointConfig]:
    if isinstance(override, ServiceEndpointConfig):
        return override
    override = override or {}
    url = override.get("url") or os.getenv(f"{prefix}_URL")
    if not url:
        return None
    try:
        timeout = int(override.get("timeout_seconds") or validate_int_env(f"{prefix}_TIMEOUT", 30, min_value=1))
    except SharedConfigurationError as exc:
        raise _reraise(exc) from exc
    api_key = override.get("api_key") or os.getenv(f"{prefix}_API_KEY")
    authorization = override.get("authorization") or os.getenv(f"{prefix}_AUTHORIZATION")
    header_prefix = f"{prefix}_HEADER_"
    additional_headers = {
        key[len(header_prefix):].replace("_", "-"): value
        for key, value in os.environ.items()
        if key.startswith(header_prefix)
    }
    additional_headers.update(override.get("additional_headers") or {})
    logger.debug("Configured %s endpoint: %s", prefix, url)
    return ServiceEndpointConfig(
        url=url,
        timeout_seconds=timeout,
        api_key=api_key,
        authorization=authorization,
        additional_headers=additional_headers,
    )

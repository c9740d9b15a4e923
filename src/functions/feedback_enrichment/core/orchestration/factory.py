"""Wiring of concrete collaborators into a :class:`PipelineProcessor`."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from src.shared.utils.config_validator import validate_bool_env

from ..db.checkpoint_store import FileCheckpointStore, InMemoryCheckpointStore, SupabaseCheckpointStore
from ..db.client import build_supabase_client
from ..db.result_writer import SupabaseResultPersister
from ..llm.http_gateway import HttpEnrichmentGateway
from ..llm.openai_gateway import OpenAIEnrichmentGateway
from ..quota.gates import SimpleQuotaGate, SupabaseUserQuotaGate, UnlimitedQuotaGate
from .config_loader import (
    build_openai_settings,
    build_pipeline_config,
    build_service_config,
    build_supabase_settings,
    monthly_quota_from_env,
)
from .processor import PipelineProcessor

logger = logging.getLogger(__name__)


def build_gateway(overrides: Optional[Dict[str, object]] = None):
    """OpenAI for sentiment, summary and reply when a key is set; HTTP otherwise."""

    overrides = overrides or {}
    service_config = build_service_config(overrides.get("services"))
    http_gateway = HttpEnrichmentGateway(service_config)
    openai_settings = build_openai_settings(overrides.get("openai"))

    if openai_settings is not None:
        service_config.require("knowledge_base")
        logger.info("Using OpenAI enrichment gateway (model=%s)", openai_settings.model)
        return OpenAIEnrichmentGateway(openai_settings, http_gateway)

    for stage in ("sentiment", "knowledge_base", "reply_generation"):
        service_config.require(stage)
    logger.info("Using HTTP enrichment gateway (summary stage: %s)", http_gateway.supports_summary)
    return http_gateway


def build_processor(
    user_id: str,
    *,
    config_overrides: Optional[Dict[str, object]] = None,
    checkpoint_dir: Optional[str] = None,
    dry_run: bool = False,
    gateway_overrides: Optional[Dict[str, object]] = None,
) -> PipelineProcessor:
    """Create a processor for ``user_id`` from the environment.

    Checkpoints go to ``checkpoint_dir`` when given, to memory on dry runs and
    to Supabase otherwise; dry runs never touch Supabase.
    ``FEEDBACK_MONTHLY_QUOTA`` selects the in-process quota gate and
    ``FEEDBACK_USER_QUOTA_ENABLED`` the per-user Supabase gate.
    """

    config = build_pipeline_config(config_overrides)
    gateway = build_gateway(gateway_overrides)

    client = None
    settings = None
    if not dry_run:
        settings = build_supabase_settings()
        client = build_supabase_client(settings)

    if checkpoint_dir:
        checkpoint_store = FileCheckpointStore(checkpoint_dir)
    elif client is not None:
        checkpoint_store = SupabaseCheckpointStore(client, table=settings.checkpoint_table)
    else:
        checkpoint_store = InMemoryCheckpointStore()

    persister = SupabaseResultPersister(
        client,
        function_name=settings.persist_function if settings else "persist_feedback_analysis",
        dry_run=dry_run,
    )

    monthly_limit = monthly_quota_from_env()
    if monthly_limit is not None:
        quota = SimpleQuotaGate(monthly_limit)
    elif client is not None and validate_bool_env("FEEDBACK_USER_QUOTA_ENABLED", False):
        quota = SupabaseUserQuotaGate(client, user_id, table=settings.user_table)
    else:
        quota = UnlimitedQuotaGate()

    logger.info(
        "Built feedback processor",
        extra={
            "metadata": {
                "user_id": user_id,
                "checkpoints": type(checkpoint_store).__name__,
                "quota": type(quota).__name__,
                "dry_run": dry_run,
            }
        },
    )
    return PipelineProcessor(
        gateway=gateway,
        persister=persister,
        checkpoint_store=checkpoint_store,
        quota=quota,
        config=config,
    )

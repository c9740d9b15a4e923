import os

import pytest

from src.functions.feedback_enrichment.core.db.checkpoint_store import (
    FileCheckpointStore,
    InMemoryCheckpointStore,
)
from src.functions.feedback_enrichment.core.errors import ConfigurationError
from src.functions.feedback_enrichment.core.llm.http_gateway import HttpEnrichmentGateway
from src.functions.feedback_enrichment.core.llm.openai_gateway import OpenAIEnrichmentGateway
from src.functions.feedback_enrichment.core.orchestration.config_loader import (
    build_openai_settings,
    build_pipeline_config,
    build_service_config,
    build_supabase_settings,
    monthly_quota_from_env,
)
from src.functions.feedback_enrichment.core.orchestration.factory import build_gateway, build_processor
from src.functions.feedback_enrichment.core.quota.gates import SimpleQuotaGate, UnlimitedQuotaGate

ENV_PREFIXES = ("FEEDBACK_", "ENRICHMENT_", "SUPABASE_", "OPENAI_")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith(ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def endpoints_env(monkeypatch):
    monkeypatch.setenv("ENRICHMENT_SENTIMENT_URL", "https://ai.example.com/sentiment")
    monkeypatch.setenv("ENRICHMENT_KNOWLEDGE_BASE_URL", "https://ai.example.com/kb")
    monkeypatch.setenv("ENRICHMENT_REPLY_GENERATION_URL", "https://ai.example.com/reply")


def test_pipeline_config_defaults():
    config = build_pipeline_config()

    assert config.batch_size == 5
    assert config.delay_ms == 800
    assert config.summarization_enabled is True
    assert config.max_retries == 5
    assert config.backoff_ms == 1000
    assert config.backoff_factor == 2.0


def test_pipeline_config_reads_environment_and_overrides_win(monkeypatch):
    monkeypatch.setenv("FEEDBACK_BATCH_SIZE", "10")
    monkeypatch.setenv("FEEDBACK_BACKOFF_FACTOR", "1.5")
    monkeypatch.setenv("FEEDBACK_SUMMARIZATION_ENABLED", "off")

    config = build_pipeline_config({"batchSize": 2})

    assert config.batch_size == 2
    assert config.backoff_factor == 1.5
    assert config.summarization_enabled is False


def test_pipeline_config_rejects_invalid_environment(monkeypatch):
    monkeypatch.setenv("FEEDBACK_MAX_RETRIES", "many")

    with pytest.raises(ConfigurationError):
        build_pipeline_config()


def test_service_config_collects_endpoint_settings(monkeypatch, endpoints_env):
    monkeypatch.setenv("ENRICHMENT_SENTIMENT_TIMEOUT", "12")
    monkeypatch.setenv("ENRICHMENT_SENTIMENT_API_KEY", "secret")
    monkeypatch.setenv("ENRICHMENT_SENTIMENT_HEADER_X_TENANT", "acme")

    config = build_service_config()

    assert config.summarization is None
    assert config.sentiment.timeout_seconds == 12
    assert config.knowledge_base.timeout_seconds == 30
    headers = config.sentiment.build_headers()
    assert headers["X-API-Key"] == "secret"
    assert headers["X-TENANT"] == "acme"


def test_supabase_settings_require_credentials():
    with pytest.raises(ConfigurationError):
        build_supabase_settings()


def test_supabase_settings_from_environment(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
    monkeypatch.setenv("SUPABASE_KEY", "service-role-key")
    monkeypatch.setenv("FEEDBACK_CHECKPOINT_TABLE", "checkpoints")

    settings = build_supabase_settings()

    assert settings.checkpoint_table == "checkpoints"
    assert settings.schema_name == "public"
    assert settings.persist_function == "persist_feedback_analysis"


def test_openai_settings_are_optional(monkeypatch):
    assert build_openai_settings() is None

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("FEEDBACK_OPENAI_MODEL", "gpt-4o")

    settings = build_openai_settings()
    assert settings.model == "gpt-4o"


def test_monthly_quota_from_env(monkeypatch):
    assert monthly_quota_from_env() is None

    monkeypatch.setenv("FEEDBACK_MONTHLY_QUOTA", "25")
    assert monthly_quota_from_env() == 25

    monkeypatch.setenv("FEEDBACK_MONTHLY_QUOTA", "lots")
    with pytest.raises(ConfigurationError):
        monthly_quota_from_env()


def test_http_gateway_requires_core_endpoints():
    with pytest.raises(ConfigurationError):
        build_gateway()


def test_gateway_selection(monkeypatch, endpoints_env):
    assert isinstance(build_gateway(), HttpEnrichmentGateway)

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert isinstance(build_gateway(), OpenAIEnrichmentGateway)


def test_dry_run_processor_stays_off_supabase(monkeypatch, endpoints_env):
    monkeypatch.setenv("FEEDBACK_MONTHLY_QUOTA", "3")

    processor = build_processor("user-1", config_overrides={"batch_size": 1}, dry_run=True)

    assert isinstance(processor.checkpoints, InMemoryCheckpointStore)
    assert isinstance(processor.quota, SimpleQuotaGate)
    assert processor.persister.dry_run is True
    assert processor.config.batch_size == 1


def test_checkpoint_directory_selects_file_store(tmp_path, endpoints_env):
    processor = build_processor("user-1", checkpoint_dir=str(tmp_path), dry_run=True)

    assert isinstance(processor.checkpoints, FileCheckpointStore)
    assert isinstance(processor.quota, UnlimitedQuotaGate)

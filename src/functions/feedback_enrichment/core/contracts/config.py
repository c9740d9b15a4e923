"""Configuration models for the feedback enrichment pipeline."""

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, ValidationError

from ..errors import ConfigurationError


class PipelineConfig(BaseModel):
    """Operational configuration for a processing run.

    Instances are immutable; use :meth:`merged` to derive a new configuration
    from a partial update, which re-runs validation.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    batch_size: int = Field(default=5, ge=1, alias="batchSize")
    delay_ms: float = Field(default=800, ge=0, alias="delayMs")
    summarization_enabled: bool = Field(default=True, alias="summarizationEnabled")
    max_retries: int = Field(default=5, ge=1, alias="maxRetries")
    backoff_ms: float = Field(default=1000, ge=0, alias="backoffMs")
    backoff_factor: float = Field(default=2.0, ge=1, alias="backoffFactor")

    def merged(self, partial: Optional[Dict[str, object]] = None) -> "PipelineConfig":
        """Return a validated copy with ``partial`` applied on top."""

        if not partial:
            return self
        data = self.model_dump()
        for key, value in partial.items():
            if value is None:
                continue
            field_name = _FIELD_BY_ALIAS.get(key, key)
            if field_name not in data:
                raise ConfigurationError(
                    f"Unknown pipeline setting '{key}'",
                    {"allowed": sorted(data)},
                )
            data[field_name] = value
        try:
            return PipelineConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(
                "Invalid pipeline configuration",
                {"errors": [error["msg"] for error in exc.errors()]},
            ) from exc

    def snapshot(self) -> Dict[str, object]:
        """Return a serialisable snapshot for reporting."""

        return self.model_dump()


_FIELD_BY_ALIAS = {
    field.alias: name for name, field in PipelineConfig.model_fields.items() if field.alias
}


class ServiceEndpointConfig(BaseModel):
    """HTTP endpoint definition for an enrichment service call."""

    url: HttpUrl
    timeout_seconds: int = Field(default=30, ge=1, le=300)
    api_key: Optional[str] = Field(
        default=None,
        description="Optional API key sent via X-API-Key header",
    )
    authorization: Optional[str] = Field(
        default=None,
        description="Optional Authorization header value",
    )
    additional_headers: Dict[str, str] = Field(default_factory=dict)

    def build_headers(self) -> Dict[str, str]:
        """Return headers that should be attached to the request."""

        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        if self.authorization:
            headers["Authorization"] = self.authorization
        headers.update(self.additional_headers)
        return headers


class EnrichmentServiceConfig(BaseModel):
    """Endpoints of the four enrichment stages; summarization is optional."""

    sentiment: Optional[ServiceEndpointConfig] = None
    summarization: Optional[ServiceEndpointConfig] = None
    knowledge_base: Optional[ServiceEndpointConfig] = None
    reply_generation: Optional[ServiceEndpointConfig] = None

    def require(self, attribute: str) -> ServiceEndpointConfig:
        """Return endpoint configuration or raise a descriptive error."""

        endpoint: Optional[ServiceEndpointConfig] = getattr(self, attribute, None)
        if endpoint is None:
            raise ConfigurationError(
                f"Missing endpoint configuration for '{attribute}'",
                {"stage": attribute},
            )
        return endpoint


class SupabaseSettings(BaseModel):
    """Settings required to interact with Supabase tables and functions."""

    url: HttpUrl = Field(..., description="Supabase project URL")
    key: str = Field(..., min_length=10, description="Supabase service role or anon key")
    schema_name: str = Field(default="public", alias="schema", description="Target database schema")
    checkpoint_table: str = Field(
        default="pipeline_checkpoints",
        description="Table holding one checkpoint document per user",
    )
    user_table: str = Field(
        default="users",
        description="Table holding per-user quota counters",
    )
    persist_function: str = Field(
        default="persist_feedback_analysis",
        description="Postgres function that stores an analysis transactionally",
    )

    model_config = ConfigDict(populate_by_name=True)


class OpenAISettings(BaseModel):
    api_key: str = Field(..., min_length=1)
    model: str = Field(default="gpt-4o-mini")
    timeout_seconds: float = Field(default=30.0, gt=0)
    temperature: float = Field(default=0.2, ge=0, le=2)

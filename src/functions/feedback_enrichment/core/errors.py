"""Error types and attempt outcomes for the feedback enrichment pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from src.shared.utils.config_validator import ConfigurationError as SharedConfigurationError

RATE_LIMIT_STATUS = 429


class PipelineError(Exception):
    """Base error carrying structured metadata for logging."""

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.metadata: Dict[str, Any] = dict(metadata or {})


class ConfigurationError(PipelineError, SharedConfigurationError):
    """Raised when the pipeline lacks required context or settings."""


class RateLimitError(PipelineError):
    """Raised by gateways when the upstream provider throttles a request."""

    status_code = RATE_LIMIT_STATUS

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        metadata: Optional[Dict[str, Any]] = None,
        *,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, metadata)
        self.retry_after = retry_after


class QuotaExceededError(PipelineError):
    """Raised by a quota gate when admitting more work would exceed the budget."""


class EnrichmentStageError(PipelineError):
    """Raised when an enrichment stage fails for a reason other than throttling."""

    def __init__(
        self,
        stage: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, {"stage": stage, **(metadata or {})})
        self.stage = stage


class CheckpointError(PipelineError):
    """Raised when a checkpoint cannot be loaded, saved or cleared."""


def is_rate_limit_error(error: BaseException) -> bool:
    """Return True when ``error`` represents upstream throttling.

    Besides :class:`RateLimitError`, errors raised by third-party clients are
    recognised when they expose a 429 ``status``, ``status_code`` or ``code``
    (the OpenAI SDK sets ``status_code``) or wrap an HTTP response with that
    status.
    """
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code == RATE_LIMIT_STATUS
    for attribute in ("status", "status_code", "code"):
        value = getattr(error, attribute, None)
        if value in (RATE_LIMIT_STATUS, str(RATE_LIMIT_STATUS)):
            return True
    return False


class AttemptKind(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one enrichment attempt for a single feedback item."""

    kind: AttemptKind
    error: Optional[BaseException] = field(default=None, compare=False)

    @classmethod
    def ok(cls) -> "AttemptOutcome":
        return cls(AttemptKind.OK)

    @classmethod
    def from_exception(cls, error: BaseException) -> "AttemptOutcome":
        kind = AttemptKind.RATE_LIMITED if is_rate_limit_error(error) else AttemptKind.FAILED
        return cls(kind, error)

    @property
    def message(self) -> Optional[str]:
        if self.error is None:
            return None
        return str(self.error) or type(self.error).__name__

"""Shared logging configuration for all functions.

Modules log through ``logging.getLogger(__name__)``. Structured context is
passed as ``extra={"metadata": {...}}`` and rendered after the message as
``key=value`` pairs, so a plain console sink still carries the diagnostic
fields the pipeline attaches to each event.
"""

from __future__ import annotations
import logging
import os
import sys
from typing import Any, Mapping, Optional

NOISY_LOGGERS = ("httpx", "httpcore", "openai", "supabase", "urllib3")


class MetadataFormatter(logging.Formatter):
    """Formatter that appends ``record.metadata`` to the rendered message."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        metadata = getattr(record, "metadata", None)
        if not metadata or not isinstance(metadata, Mapping):
            return message
        return f"{message} | {format_metadata(metadata)}"


def format_metadata(metadata: Mapping[str, Any]) -> str:
    """Render metadata as space separated ``key=value`` pairs."""
    parts = []
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            value = ",".join(str(entry) for entry in value)
        parts.append(f"{key}={value}")
    return " ".join(parts)


def setup_logging(
    level: Optional[str] = None,
    format_string: Optional[str] = None,
    include_timestamp: bool = True
) -> None:
    """Configure root logger with a console handler.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               If None, reads from LOG_LEVEL env var or defaults to INFO.
        format_string: Custom format string. If None, uses default format.
        include_timestamp: Whether to include timestamp in log messages.

    Example:
        >>> setup_logging(level="DEBUG")
        >>> logger = logging.getLogger(__name__)
        >>> logger.info("Item done", extra={"metadata": {"item_id": "f-1"}})
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    level = level.upper()

    if format_string is None:
        if include_timestamp:
            format_string = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        else:
            format_string = "[%(levelname)s] %(name)s: %(message)s"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(MetadataFormatter(format_string, datefmt="%Y-%m-%d %H:%M:%S"))

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        handlers=[handler],
        force=True  # Override any existing configuration
    )

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get a logger instance with optional custom level.

    Args:
        name: Logger name (typically __name__)
        level: Optional logging level override

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if level:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    return logger

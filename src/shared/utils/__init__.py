"""Shared utility functions."""

from .logging import setup_logging, get_logger
from .env import load_env

__all__ = ["setup_logging", "get_logger", "load_env"]

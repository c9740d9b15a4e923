"""Orchestration for the feedback enrichment pipeline."""

from .processor import PipelineProcessor

__all__ = ["PipelineProcessor"]

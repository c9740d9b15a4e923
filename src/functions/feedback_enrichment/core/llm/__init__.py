"""Enrichment gateways for feedback enrichment."""

from .base import EnrichmentGateway
from .http_gateway import HttpEnrichmentGateway, parse_knowledge_base_matches
from .openai_gateway import OpenAIEnrichmentGateway

__all__ = [
    "EnrichmentGateway",
    "HttpEnrichmentGateway",
    "OpenAIEnrichmentGateway",
    "parse_knowledge_base_matches",
]

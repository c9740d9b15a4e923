"""
Persistence of finished analyses.

The Supabase writer stores each analysis through a single Postgres function
(see ``sql/persist_feedback_analysis.sql``) so the analysis row, the feedback
row's ``updated_at`` and the per-user pipeline pointer change in one
transaction.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

from ..contracts.analysis import AnalysisRecord
from ..contracts.feedback import FeedbackItem
from .client import response_rows

logger = logging.getLogger(__name__)


class ResultPersister(Protocol):
    async def persist(self, record: AnalysisRecord, feedback: FeedbackItem) -> None:
        """Store ``record`` and mark ``feedback`` as processed, atomically."""


class SupabaseResultPersister:
    """
    Writes analyses via the ``persist_feedback_analysis`` RPC.

    Features:
    - One RPC per analysis, executed as a single transaction
    - Dry-run mode that only logs what would be written
    - Idempotent on the analysis id (the function upserts)
    """

    def __init__(
        self,
        client=None,
        *,
        function_name: str = "persist_feedback_analysis",
        dry_run: bool = False,
    ) -> None:
        if client is None and not dry_run:
            raise ValueError("A Supabase client is required unless dry_run is enabled")
        self.client = client
        self.function_name = function_name
        self.dry_run = dry_run
        self.persisted = 0

        mode = "DRY-RUN" if dry_run else "PRODUCTION"
        logger.info("Initialized SupabaseResultPersister in %s mode (function: %s)", mode, function_name)

    def build_params(self, record: AnalysisRecord, feedback: FeedbackItem) -> Dict[str, Any]:
        """Return the RPC arguments for ``record``."""

        document = record.to_document()
        return {
            "p_user_id": record.user_id,
            "p_feedback_id": record.feedback_id,
            "p_analysis_id": record.id,
            "p_analysis": {
                "sentiment": document["sentiment"],
                "score": record.sentiment.score,
                "tags": document["tags"],
                "kbMatchIds": document["kbMatchIds"],
                "suggestedReply": document["suggestedReply"],
                "summary": record.summary,
                "job": document["job"],
            },
            "p_feedback": feedback.to_payload(),
        }

    def _persist(self, record: AnalysisRecord, feedback: FeedbackItem) -> Optional[Dict[str, Any]]:
        params = self.build_params(record, feedback)
        if self.dry_run:
            logger.info(
                "[DRY-RUN] Would persist analysis",
                extra={"metadata": {"analysis_id": record.id, "feedback_id": record.feedback_id}},
            )
            self.persisted += 1
            return None

        response = self.client.rpc(self.function_name, params).execute()
        rows = response_rows(response)
        self.persisted += 1
        logger.debug(
            "Persisted analysis",
            extra={"metadata": {"analysis_id": record.id, "feedback_id": record.feedback_id}},
        )
        return rows[0] if rows else None

    async def persist(self, record: AnalysisRecord, feedback: FeedbackItem) -> None:
        await asyncio.to_thread(self._persist, record, feedback)

"""Durable per-user checkpoint storage."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional, Protocol

from pydantic import ValidationError

from src.shared.batch.checkpoint import JsonDocumentStore

from ..contracts.checkpoint import Checkpoint
from ..errors import CheckpointError
from .client import response_rows

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    async def load(self, user_id: str) -> Optional[Checkpoint]:
        ...

    async def save(self, checkpoint: Checkpoint) -> None:
        ...

    async def clear(self, user_id: str) -> None:
        ...


class InMemoryCheckpointStore:
    """Keeps checkpoint documents in a dict; useful for dry runs."""

    def __init__(self) -> None:
        self.documents: Dict[str, Dict[str, object]] = {}

    async def load(self, user_id: str) -> Optional[Checkpoint]:
        document = self.documents.get(user_id)
        return Checkpoint.from_document(document) if document else None

    async def save(self, checkpoint: Checkpoint) -> None:
        self.documents[checkpoint.user_id] = checkpoint.to_document()

    async def clear(self, user_id: str) -> None:
        self.documents.pop(user_id, None)


class FileCheckpointStore:
    """One JSON checkpoint document per user inside ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.documents = JsonDocumentStore(directory, prefix="pipeline")

    def _load(self, user_id: str) -> Optional[Checkpoint]:
        try:
            document = self.documents.read(user_id)
        except (OSError, ValueError) as exc:
            raise CheckpointError(
                f"Failed to read checkpoint: {exc}",
                {"user_id": user_id, "path": str(self.documents.path_for(user_id))},
            ) from exc
        if document is None:
            return None
        try:
            return Checkpoint.from_document(document)
        except ValidationError as exc:
            raise CheckpointError(
                "Stored checkpoint is malformed",
                {"user_id": user_id, "errors": exc.error_count()},
            ) from exc

    def _save(self, checkpoint: Checkpoint) -> None:
        try:
            self.documents.write(checkpoint.user_id, checkpoint.to_document())
        except OSError as exc:
            raise CheckpointError(
                f"Failed to write checkpoint: {exc}",
                {"user_id": checkpoint.user_id},
            ) from exc

    def _clear(self, user_id: str) -> None:
        try:
            self.documents.delete(user_id)
        except OSError as exc:
            raise CheckpointError(f"Failed to delete checkpoint: {exc}", {"user_id": user_id}) from exc

    async def load(self, user_id: str) -> Optional[Checkpoint]:
        return await asyncio.to_thread(self._load, user_id)

    async def save(self, checkpoint: Checkpoint) -> None:
        await asyncio.to_thread(self._save, checkpoint)

    async def clear(self, user_id: str) -> None:
        await asyncio.to_thread(self._clear, user_id)


class SupabaseCheckpointStore:
    """Checkpoint rows keyed by ``user_id``; the document sits in a JSON column."""

    def __init__(self, client, *, table: str = "pipeline_checkpoints") -> None:
        self.client = client
        self.table = table

    def _load(self, user_id: str) -> Optional[Checkpoint]:
        response = (
            self.client.table(self.table)
            .select("document")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        rows = response_rows(response)
        if not rows:
            return None
        document = dict(rows[0].get("document") or {})
        document.setdefault("userId", user_id)
        return Checkpoint.from_document(document)

    def _save(self, checkpoint: Checkpoint) -> None:
        document = checkpoint.to_document()
        record = {
            "user_id": checkpoint.user_id,
            "status": document["status"],
            "document": document,
            "updated_at": document["updatedAt"],
        }
        self.client.table(self.table).upsert(record, on_conflict="user_id").execute()

    def _clear(self, user_id: str) -> None:
        self.client.table(self.table).delete().eq("user_id", user_id).execute()

    async def _call(self, operation: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except CheckpointError:
            raise
        except Exception as exc:
            logger.error(
                "Supabase checkpoint %s failed: %s",
                operation,
                exc,
                extra={"metadata": {"table": self.table}},
            )
            raise CheckpointError(f"Checkpoint {operation} failed: {exc}", {"table": self.table}) from exc

    async def load(self, user_id: str) -> Optional[Checkpoint]:
        return await self._call("load", self._load, user_id)

    async def save(self, checkpoint: Checkpoint) -> None:
        await self._call("save", self._save, checkpoint)

    async def clear(self, user_id: str) -> None:
        await self._call("clear", self._clear, user_id)

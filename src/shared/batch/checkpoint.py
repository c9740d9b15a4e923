"""Keyed JSON document store with atomic writes."""

from __future__ import annotations

import json
import logging
import re
import threading
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class JsonDocumentStore:
    """Persists one JSON document per key inside a directory.

    Writes go to a temporary file first and are then renamed over the target,
    so a crash mid-write leaves the previous document intact.

    Example:
        store = JsonDocumentStore("./checkpoints", prefix="pipeline")

        store.write("user-1", {"status": "paused"})
        document = store.read("user-1")
        store.delete("user-1")
    """

    def __init__(self, directory: str | Path, *, prefix: str = "", suffix: str = ".json"):
        """Initialize the store.

        Args:
            directory: Directory holding the documents (created on first write)
            prefix: Optional filename prefix, e.g. ``pipeline``
            suffix: Filename suffix
        """
        self.directory = Path(directory)
        self.prefix = prefix
        self.suffix = suffix
        self.lock = threading.Lock()

    def path_for(self, key: str) -> Path:
        """Return the file path used for ``key``."""
        safe_key = _UNSAFE_KEY_CHARS.sub("_", key)
        name = f"{self.prefix}_{safe_key}" if self.prefix else safe_key
        return self.directory / f"{name}{self.suffix}"

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        """Load the document stored under ``key``.

        Returns:
            The decoded document or None when nothing is stored

        Raises:
            OSError: If the file exists but cannot be read
            ValueError: If the file does not contain a JSON object
        """
        path = self.path_for(key)
        with self.lock:
            if not path.exists():
                return None
            with open(path, "r", encoding="utf-8") as f:
                loaded = json.load(f)

        if not isinstance(loaded, dict):
            raise ValueError(f"Document at {path} is not a JSON object")
        logger.debug("Loaded document from %s", path)
        return loaded

    def write(self, key: str, document: Dict[str, Any]) -> Path:
        """Atomically write ``document`` under ``key``."""
        path = self.path_for(key)
        with self.lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            # Write to temp file first
            temp_path = path.with_suffix(path.suffix + ".tmp")
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)

            # Atomic rename
            temp_path.replace(path)
        logger.debug("Document flushed to %s", path)
        return path

    def delete(self, key: str) -> bool:
        """Remove the document for ``key``; returns whether one existed."""
        path = self.path_for(key)
        with self.lock:
            if not path.exists():
                return False
            path.unlink()
        logger.debug("Document removed at %s", path)
        return True


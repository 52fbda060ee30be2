"""
InMemoryBlobStore — Dict-backed blob store for development and testing.

Values are stored as serialized JSON text so that a save/load cycle
behaves exactly like the file backend (no shared mutable references).
All data is lost on process restart.
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Optional

from database.store_base import BaseBlobStore, BlobStoreError

logger = structlog.get_logger()


class InMemoryBlobStore(BaseBlobStore):

    def __init__(self):
        self._blobs: dict[str, str] = {}
        logger.info("inmemory_blob_store_initialized")

    def load(self, key: str) -> Optional[Any]:
        raw = self._blobs.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise BlobStoreError(f"Corrupt blob for key {key}: {e}") from e

    def save(self, key: str, value: Any) -> None:
        try:
            self._blobs[key] = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise BlobStoreError(f"Value for key {key} is not JSON-serializable: {e}") from e

    def delete(self, key: str) -> None:
        self._blobs.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._blobs)

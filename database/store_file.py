"""
FileBlobStore — JSON file-backed blob store with persistence across restarts.

Data layout:
  {data_dir}/
    {key}.json

Features:
  - Survives process restarts (unlike InMemoryBlobStore)
  - No external dependencies (no database server, no Redis)
  - Every save is written to a temp file and renamed into place
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import json
import re
import structlog
from pathlib import Path
from typing import Any, Optional

from database.store_base import BaseBlobStore, BlobStoreError

logger = structlog.get_logger()

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class FileBlobStore(BaseBlobStore):

    def __init__(self, data_dir: str = "./data"):
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        logger.info("file_blob_store_initialized", data_dir=str(self._data_dir))

    def _file_path(self, key: str) -> Path:
        return self._data_dir / f"{_SAFE_KEY.sub('_', key)}.json"

    def load(self, key: str) -> Optional[Any]:
        path = self._file_path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise BlobStoreError(f"Cannot read {path}: {e}") from e

    def save(self, key: str, value: Any) -> None:
        path = self._file_path(key)
        tmp_path = path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2)
            tmp_path.replace(path)  # atomic on POSIX
        except (OSError, TypeError, ValueError) as e:
            raise BlobStoreError(f"Cannot write {path}: {e}") from e
        logger.debug("file_blob_saved", key=key, path=str(path))

    def delete(self, key: str) -> None:
        path = self._file_path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise BlobStoreError(f"Cannot delete {path}: {e}") from e

"""
Store Factory — build the blob store named in the storage settings.

    storage:
      backend: file          # "memory" (lost on restart) | "file"
      file_dir: ./data       # file backend only; one {key}.json per blob

Every call returns a new store. The MessagingService owns the one it is
given; nothing here is cached at module level.
"""
from __future__ import annotations

import structlog

from config.settings import StorageConfig
from database.store_base import BaseBlobStore

logger = structlog.get_logger()

BACKENDS = ("memory", "file")


def create_store(config: StorageConfig = None) -> BaseBlobStore:
    config = config or StorageConfig()
    if config.backend not in BACKENDS:
        raise ValueError(f"Unknown storage backend '{config.backend}', expected one of {BACKENDS}")

    if config.backend == "file":
        from database.store_file import FileBlobStore
        store = FileBlobStore(data_dir=config.file_dir)
        logger.info("store_created", backend="file", data_dir=config.file_dir)
        return store

    from database.store_memory import InMemoryBlobStore
    logger.info("store_created", backend="memory")
    return InMemoryBlobStore()

"""
Database layer — Blob persistence for the engagement cache.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from config.settings import StorageConfig
  from database import create_store
  store = create_store(StorageConfig(backend="file", file_dir="./data"))
  store.save("key", {"a": 1})
"""
from database.store_base import BaseBlobStore, BlobStoreError
from database.store_memory import InMemoryBlobStore
from database.store_file import FileBlobStore
from database.store_factory import create_store

__all__ = [
    # Store interface
    "BaseBlobStore", "BlobStoreError",
    # Store backends
    "InMemoryBlobStore", "FileBlobStore",
    # Factory
    "create_store",
]

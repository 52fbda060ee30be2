"""
Abstract Blob Store — Interface for engagement-cache persistence.

Implementations:
  - InMemoryBlobStore (dict-based, single-process, no persistence)
  - FileBlobStore     (one JSON file per key, single-process, durable)

The engagement cache serializes its whole map into ONE JSON-compatible
value under a fixed key, so the interface is a plain key/value contract.
Backends must round-trip exactly: the value saved is the value loaded.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class BlobStoreError(Exception):
    """Raised when a backend cannot read or write a blob."""


class BaseBlobStore(ABC):
    """Interface that all blob store backends must implement."""

    @abstractmethod
    def load(self, key: str) -> Optional[Any]:
        """Return the stored value, or None when the key was never saved."""
        ...

    @abstractmethod
    def save(self, key: str, value: Any) -> None:
        """Durably store a JSON-serializable value. Returns once written."""
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

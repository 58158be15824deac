"""
Base protocol and types for the document backend abstraction.

This module defines the DocumentBackend protocol that every storage adapter
must implement, along with the error taxonomy shared by all stores.

Invariants:
    - get() returns None for a missing path; absence is never an error
    - put() is a whole-document overwrite; there is no partial update
    - list() is eventually consistent and may miss very recent writes
    - Backends enforce no uniqueness and no transactions

How to change safely:
    - Protocol changes require updating all implementations
    - Keep retryable/non-retryable classification on the error types, not
      in the callers
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Protocol,
    runtime_checkable,
)
import logging

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for backend operations."""

    retryable = False


class StorageConnectionError(StorageError):
    """Backend unreachable or misconfigured. Fatal to initialization."""

    pass


class TransientStorageError(StorageError):
    """Network reset, timeout, rate limit or 5xx. Safe to retry."""

    retryable = True


class DocumentValidationError(StorageError):
    """Stored content could not be parsed into the expected shape."""

    pass


@dataclass(frozen=True)
class ObjectInfo:
    """A listed document.

    Attributes:
        path: Full document path
        size: Stored size in bytes
        updated: Last modification time, if the backend reports one
        metadata: User metadata stored alongside the document
    """

    path: str
    size: int = 0
    updated: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class DocumentBackend(Protocol):
    """Protocol for document backends.

    Every path addresses one whole document. Writers overwrite the entire
    document; readers always see a complete (possibly stale) version.

    Example:
        >>> backend = S3Backend(config.s3)
        >>> await backend.connect()
        >>> await backend.put("data/users.json", b"[]")
        >>> data = await backend.get("data/users.json")
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            StorageConnectionError: If the backend is unreachable
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def get(self, path: str) -> bytes | None:
        """Read a whole document, or None if it does not exist."""
        ...

    @abstractmethod
    async def put(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/json",
        cache_control: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        """Overwrite a whole document."""
        ...

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Whether a document exists at path."""
        ...

    @abstractmethod
    async def list(self, prefix: str, include_metadata: bool = False) -> list[ObjectInfo]:
        """List documents whose path starts with prefix.

        Args:
            prefix: Path prefix to scan
            include_metadata: Also fetch user metadata (one extra round-trip
                per object on backends that do not return it when listing)
        """
        ...

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Delete a document. Returns False if it did not exist."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether connect() has succeeded."""
        ...


def create_backend(config: "ServerConfig") -> DocumentBackend:
    """Factory function to create a document backend from configuration.

    The adapter is chosen once here; stores never resolve the backend
    dynamically at call time.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StorageBackend
    from .memory import InMemoryBackend
    from .s3 import S3Backend
    from .sqlite_table import SqliteTableBackend

    if config.backend == StorageBackend.S3:
        return S3Backend(config.s3)
    elif config.backend == StorageBackend.SQLITE:
        return SqliteTableBackend(
            config.tabular.db_path,
            busy_timeout_ms=config.tabular.busy_timeout_ms,
        )
    elif config.backend == StorageBackend.MEMORY:
        return InMemoryBackend()
    else:
        raise ValueError(f"Unsupported storage backend: {config.backend}")

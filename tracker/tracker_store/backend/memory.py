"""
In-memory document backend for testing.

This module provides a simple in-memory backend for:
- Unit tests
- Local development without external dependencies

Invariants:
    - All data is lost on process exit
    - Behaves like a blob store: whole-document overwrite, prefix listing
    - Every call yields to the event loop, like a real round-trip would

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with DocumentBackend protocol
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .base import ObjectInfo, StorageConnectionError

logger = logging.getLogger(__name__)


@dataclass
class StoredDocument:
    """A document held in memory."""

    data: bytes
    content_type: str
    cache_control: str | None
    metadata: dict[str, str] = field(default_factory=dict)
    updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class _InjectedFailure:
    exception: Exception
    operation: str | None


class InMemoryBackend:
    """In-memory implementation of DocumentBackend for testing.

    Attributes:
        latency: Seconds every call sleeps before touching the data

    Example:
        >>> backend = InMemoryBackend()
        >>> await backend.connect()
        >>> await backend.put("data/users.json", b"[]")
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self._documents: dict[str, StoredDocument] = {}
        self._failures: deque[_InjectedFailure] = deque()
        self._connected = False
        self.calls: list[tuple[str, str]] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryBackend connected")

    async def close(self) -> None:
        """Close without clearing data, so a reconnect sees the same state."""
        self._connected = False
        logger.debug("InMemoryBackend closed")

    async def _round_trip(self, operation: str, path: str) -> None:
        if not self._connected:
            raise StorageConnectionError("Not connected")
        self.calls.append((operation, path))
        await asyncio.sleep(self.latency)
        if self._failures:
            failure = self._failures[0]
            if failure.operation is None or failure.operation == operation:
                self._failures.popleft()
                raise failure.exception

    async def get(self, path: str) -> bytes | None:
        await self._round_trip("get", path)
        doc = self._documents.get(path)
        return doc.data if doc else None

    async def put(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/json",
        cache_control: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        await self._round_trip("put", path)
        self._documents[path] = StoredDocument(
            data=data,
            content_type=content_type,
            cache_control=cache_control,
            metadata=dict(metadata or {}),
        )

    async def exists(self, path: str) -> bool:
        await self._round_trip("exists", path)
        return path in self._documents

    async def list(self, prefix: str, include_metadata: bool = False) -> list[ObjectInfo]:
        await self._round_trip("list", prefix)
        return [
            ObjectInfo(
                path=path,
                size=len(doc.data),
                updated=doc.updated,
                metadata=dict(doc.metadata) if include_metadata else {},
            )
            for path, doc in sorted(self._documents.items())
            if path.startswith(prefix)
        ]

    async def delete(self, path: str) -> bool:
        await self._round_trip("delete", path)
        return self._documents.pop(path, None) is not None

    # Testing helpers

    def inject_failure(
        self,
        exception: Exception,
        times: int = 1,
        operation: str | None = None,
    ) -> None:
        """Make the next matching call(s) raise exception.

        Args:
            exception: Exception to raise
            times: How many consecutive matching calls fail
            operation: Restrict to "get", "put", "list", "delete" or "exists"
        """
        for _ in range(times):
            self._failures.append(_InjectedFailure(exception, operation))

    def raw(self, path: str) -> StoredDocument | None:
        """Stored document without a round-trip (testing helper)."""
        return self._documents.get(path)

    def write_raw(self, path: str, data: bytes, **metadata: str) -> None:
        """Place a document directly, bypassing failure injection."""
        self._documents[path] = StoredDocument(
            data=data,
            content_type="application/json",
            cache_control=None,
            metadata=dict(metadata),
        )

    def paths(self, prefix: str = "") -> list[str]:
        """All stored paths under prefix (testing helper)."""
        return sorted(p for p in self._documents if p.startswith(prefix))

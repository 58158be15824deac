"""
BlobStore: whole-document JSON storage on top of a DocumentBackend.

BlobStore is the leaf every other store builds on. It:
- Parses and serializes JSON documents
- Returns a caller-declared default when a document is absent
- Wraps every backend round-trip in retry with exponential backoff
- Converts failures into StoreResult values and logs them

Invariants:
    - Absence is never an error: read() of a missing path is ok=True,
      found=False, value=default
    - A malformed document is logged and read as the default with
      ok=False and reason="invalid_document"; the next successful write
      supersedes it
    - Defaults are copied, so mutating a returned default never leaks into
      later reads

How to change safely:
    - Keep serialization stable (indent=2, UTF-8); stored documents are
      read by other tools
    - Do not catch asyncio.CancelledError; it must propagate
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..backend.base import DocumentBackend, ObjectInfo
from .result import StoreResult
from .retry import is_retryable, retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

NO_CACHE = "no-cache"
PRIVATE_NO_STORE = "private, max-age=0"


class BlobStore:
    """JSON document store with retry.

    Attributes:
        backend: Document backend adapter
        max_retries: Retries after the first attempt
        base_delay_ms: First backoff delay

    Example:
        >>> store = BlobStore(S3Backend(config.s3))
        >>> await store.connect()
        >>> users = await store.load("data/users.json", [])
        >>> result = await store.save("data/users.json", users)
        >>> if not result:
        ...     print(result.reason)
    """

    def __init__(
        self,
        backend: DocumentBackend,
        max_retries: int = 3,
        base_delay_ms: int = 100,
    ) -> None:
        self.backend = backend
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms

    async def connect(self) -> None:
        """Connect the backend.

        Raises:
            StorageConnectionError: If the backend is unreachable
        """
        await self.backend.connect()

    async def close(self) -> None:
        await self.backend.close()

    @property
    def is_connected(self) -> bool:
        return self.backend.is_connected

    async def retry(self, op: Callable[[], Awaitable[T]], description: str) -> T:
        """Run a backend call under this store's retry policy."""
        return await retry_with_backoff(
            op,
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            classify=is_retryable,
            description=description,
        )

    async def read(self, path: str, default: Any) -> StoreResult:
        """Read and parse a document.

        Args:
            path: Document path
            default: Typed empty value returned when the document is absent

        Returns:
            StoreResult with the parsed value or the default
        """
        try:
            raw = await self.retry(lambda: self.backend.get(path), f"load {path}")
        except Exception as e:
            logger.error(
                "Failed to load document",
                extra={"operation": "load", "path": path, "error": str(e)},
            )
            return StoreResult.failure(str(e), value=copy.deepcopy(default))

        if raw is None:
            return StoreResult.missing(copy.deepcopy(default))

        try:
            value = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(
                "Stored document is not valid JSON, using empty default",
                extra={"operation": "load", "path": path, "error": str(e)},
            )
            return StoreResult.invalid(copy.deepcopy(default))

        if default is not None and not isinstance(value, type(default)):
            logger.error(
                "Stored document has unexpected shape, using empty default",
                extra={
                    "operation": "load",
                    "path": path,
                    "expected": type(default).__name__,
                    "actual": type(value).__name__,
                },
            )
            return StoreResult.invalid(copy.deepcopy(default))

        return StoreResult.success(value)

    async def load(self, path: str, default: Any) -> Any:
        """Parsed document, or default when absent or unreadable."""
        return (await self.read(path, default)).value

    async def save(
        self,
        path: str,
        value: Any,
        content_type: str = "application/json",
        cache_control: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> StoreResult:
        """Serialize and overwrite a document.

        Args:
            path: Document path
            value: JSON-serializable value
            content_type: Content classification passed to the backend
            cache_control: Cache directive passed to the backend
            metadata: User metadata stored with the document

        Returns:
            StoreResult; ok is False if serialization or the write failed
        """
        try:
            data = json.dumps(value, indent=2, default=str).encode("utf-8")
        except (TypeError, ValueError) as e:
            logger.error(
                "Document is not JSON-serializable",
                extra={"operation": "save", "path": path, "error": str(e)},
            )
            return StoreResult.failure(f"serialization failed: {e}")

        try:
            await self.retry(
                lambda: self.backend.put(
                    path,
                    data,
                    content_type=content_type,
                    cache_control=cache_control,
                    metadata=metadata,
                ),
                f"save {path}",
            )
        except Exception as e:
            logger.error(
                "Failed to save document",
                extra={"operation": "save", "path": path, "error": str(e)},
            )
            return StoreResult.failure(str(e))

        return StoreResult.success(value)

    async def copy(self, source: str, destination: str) -> StoreResult:
        """Copy raw document bytes. value is the copied bytes.

        A missing source is reported as ok with found=False.
        """
        try:
            raw = await self.retry(lambda: self.backend.get(source), f"load {source}")
            if raw is None:
                return StoreResult.success(b"", found=False)
            await self.retry(
                lambda: self.backend.put(destination, raw), f"save {destination}"
            )
        except Exception as e:
            logger.error(
                "Failed to copy document",
                extra={"operation": "copy", "path": source, "destination": destination, "error": str(e)},
            )
            return StoreResult.failure(str(e), value=b"")
        return StoreResult.success(raw)

    async def exists(self, path: str) -> bool:
        try:
            return await self.retry(lambda: self.backend.exists(path), f"exists {path}")
        except Exception as e:
            logger.error(
                "Failed to check document",
                extra={"operation": "exists", "path": path, "error": str(e)},
            )
            return False

    async def list(self, prefix: str, include_metadata: bool = False) -> StoreResult:
        """List documents under prefix. value is a list of ObjectInfo."""
        try:
            objects: list[ObjectInfo] = await self.retry(
                lambda: self.backend.list(prefix, include_metadata=include_metadata),
                f"list {prefix}",
            )
        except Exception as e:
            logger.error(
                "Failed to list documents",
                extra={"operation": "list", "path": prefix, "error": str(e)},
            )
            return StoreResult.failure(str(e), value=[])
        return StoreResult.success(objects)

    async def delete(self, path: str) -> StoreResult:
        """Delete a document. value is False if it did not exist."""
        try:
            deleted = await self.retry(lambda: self.backend.delete(path), f"delete {path}")
        except Exception as e:
            logger.error(
                "Failed to delete document",
                extra={"operation": "delete", "path": path, "error": str(e)},
            )
            return StoreResult.failure(str(e), value=False)
        return StoreResult.success(deleted)

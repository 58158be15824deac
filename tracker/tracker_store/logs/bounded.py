"""
Bounded newest-first log in a single document (the initiative changelog).

New records are inserted at the front; the document is trimmed to the
newest ``cap`` records on every append.
"""

from __future__ import annotations

import logging
from typing import Any

from ..blob.result import StoreResult
from ..blob.store import NO_CACHE, BlobStore
from ..locking import KeyedMutationLock

logger = logging.getLogger(__name__)

CHANGELOG_PATH = "data/changelog.json"
DEFAULT_CAP = 1000


class BoundedLog:
    def __init__(
        self,
        blob: BlobStore,
        lock: KeyedMutationLock,
        path: str = CHANGELOG_PATH,
        cap: int = DEFAULT_CAP,
    ) -> None:
        self.blob = blob
        self.lock = lock
        self.path = path
        self.cap = cap

    async def append(self, records: list[dict[str, Any]]) -> StoreResult:
        """Prepend records (given oldest first) and trim to cap."""
        async with self.lock.hold(self.path):
            current = await self.blob.read(self.path, [])
            if not current.ok and not current.corrupt:
                logger.error(
                    "Aborting append, log could not be read",
                    extra={"operation": "append", "path": self.path, "error": current.reason},
                )
                return StoreResult.failure(current.reason or "read failed")

            entries = list(reversed(records)) + current.value
            if len(entries) > self.cap:
                entries = entries[: self.cap]
            return await self.blob.save(self.path, entries, cache_control=NO_CACHE)

    async def get(self, initiative_id: str | None = None) -> list[dict[str, Any]]:
        """Newest-first records, optionally only those of one initiative."""
        entries = await self.blob.load(self.path, [])
        if initiative_id:
            return [e for e in entries if e.get("initiativeId") == initiative_id]
        return entries

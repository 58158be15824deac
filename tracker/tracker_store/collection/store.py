"""
CollectionStore: a primary entity collection stored as one JSON array.

Neither backing store enforces unique keys, so uniqueness of ``id`` is
maintained here:
- Reads drop duplicate ids (first occurrence wins) before returning
- Upsert replaces by id or appends
- Bulk sync deduplicates the incoming batch, cleans up duplicate rows
  already stored in a tabular backend, then overwrites in place or inserts

Invariants:
    - Every read-modify-write cycle on the collection runs under the
      injected KeyedMutationLock keyed by the collection path
    - A read that failed for a backend reason aborts the write
      (StoreResult.ok is False); a malformed document is replaced by the
      empty collection on the next write
    - update() goes through VersionGate: version must match, then +1

How to change safely:
    - Keep the lock around the whole load -> modify -> save span
    - Do not route bulk_sync through save_all on tabular backends; row
      updates keep row handles stable for concurrent readers
"""

from __future__ import annotations

import copy
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from ..backend.sqlite_table import SqliteTableBackend
from ..blob.result import StoreResult
from ..blob.store import PRIVATE_NO_STORE, BlobStore
from ..locking import KeyedMutationLock
from .versioning import EntityNotFoundError, VersionGate

logger = logging.getLogger(__name__)

INITIATIVES_PATH = "data/initiatives.json"
USERS_PATH = "data/users.json"

DELETED_AT = "deletedAt"
DELETED_BY = "deletedBy"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def dedupe_by_id(
    entities: list[dict[str, Any]], source: str
) -> tuple[list[dict[str, Any]], int]:
    """Keep the first entity per id.

    Entities without an id cannot be deduplicated and are dropped as well.
    Each drop is logged.

    Returns:
        (kept entities, number dropped)
    """
    seen: set[str] = set()
    kept: list[dict[str, Any]] = []
    dropped = 0
    for position, entity in enumerate(entities):
        entity_id = entity.get("id") if isinstance(entity, dict) else None
        if entity_id in (None, ""):
            dropped += 1
            logger.warning(
                "Dropping entity without id",
                extra={"source": source, "position": position},
            )
            continue
        key = str(entity_id)
        if key in seen:
            dropped += 1
            logger.warning(
                "Dropping duplicate entity",
                extra={"source": source, "entity_id": key, "position": position},
            )
            continue
        seen.add(key)
        kept.append(entity)
    return kept, dropped


@dataclass
class SyncReport:
    """Outcome counters of a bulk sync."""

    received: int = 0
    incoming_duplicates: int = 0
    stored_duplicates_removed: int = 0
    updated: int = 0
    inserted: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class CollectionStore:
    """Upsert, delete and bulk sync of one entity collection.

    Attributes:
        blob: Whole-document store
        path: Collection document path
        lock: Shared per-key lock registry
        rows: Tabular backend for row-level bulk operations, or None when
            the collection lives in a blob backend

    Example:
        >>> initiatives = CollectionStore(blob, INITIATIVES_PATH, lock)
        >>> await initiatives.upsert({"id": "Q1-0001", "title": "Launch", "version": 0})
        >>> await initiatives.update({"id": "Q1-0001", "title": "Launch v2", "version": 0})
    """

    def __init__(
        self,
        blob: BlobStore,
        path: str,
        lock: KeyedMutationLock,
        rows: SqliteTableBackend | None = None,
    ) -> None:
        self.blob = blob
        self.path = path
        self.lock = lock
        self.rows = rows
        self.gate = VersionGate(self)

    @asynccontextmanager
    async def _mutation(self) -> AsyncIterator[None]:
        async with self.lock.hold(self.path):
            yield

    async def _read_for_write(self, operation: str) -> list[dict[str, Any]] | None:
        """Current entities, or None if the read failed and the write must abort."""
        result = await self.blob.read(self.path, [])
        if not result.ok and not result.corrupt:
            logger.error(
                "Aborting write, collection could not be read",
                extra={"operation": operation, "path": self.path, "error": result.reason},
            )
            return None
        entities, _ = dedupe_by_id(result.value, source=self.path)
        return entities

    # Reads

    async def read_all(self) -> StoreResult:
        """Every entity, deduplicated by id. Absent collection reads as []."""
        result = await self.blob.read(self.path, [])
        entities, _ = dedupe_by_id(result.value, source=self.path)
        return StoreResult(ok=result.ok, value=entities, found=result.found, reason=result.reason)

    async def load_all(self) -> list[dict[str, Any]]:
        return (await self.read_all()).value

    async def list_active(self) -> list[dict[str, Any]]:
        """Entities without a deletedAt marker."""
        return [e for e in await self.load_all() if not e.get(DELETED_AT)]

    async def get(self, entity_id: str) -> dict[str, Any] | None:
        for entity in await self.load_all():
            if str(entity.get("id")) == entity_id:
                return entity
        return None

    # Writes

    async def save_all(self, entities: list[dict[str, Any]]) -> StoreResult:
        """Overwrite the whole collection."""
        return await self.blob.save(self.path, entities, cache_control=PRIVATE_NO_STORE)

    async def upsert(self, entity: dict[str, Any]) -> StoreResult:
        """Replace the entity with the same id, or append it.

        Last write wins; use update() for version-checked writes.
        """
        entity_id = entity.get("id")
        if entity_id in (None, ""):
            return StoreResult.failure("entity has no id")

        async with self._mutation():
            entities = await self._read_for_write("upsert")
            if entities is None:
                return StoreResult.failure("collection unavailable")

            for index, existing in enumerate(entities):
                if str(existing.get("id")) == str(entity_id):
                    entities[index] = entity
                    break
            else:
                entities.append(entity)

            result = await self.save_all(entities)
        return StoreResult.success(entity) if result.ok else result

    async def update(self, entity: dict[str, Any]) -> StoreResult:
        """Version-checked update.

        Raises:
            EntityNotFoundError: If no entity has this id
            ConflictError: If entity["version"] differs from the stored one
        """
        entity_id = str(entity.get("id"))
        async with self._mutation():
            entities = await self._read_for_write("update")
            if entities is None:
                return StoreResult.failure("collection unavailable")

            for index, stored in enumerate(entities):
                if str(stored.get("id")) == entity_id:
                    break
            else:
                raise EntityNotFoundError(entity_id)

            VersionGate.check(stored, entity)
            updated = VersionGate.bump(entity, stored)
            entities[index] = updated
            result = await self.save_all(entities)
        return StoreResult.success(updated) if result.ok else result

    async def update_with_retry(
        self,
        entity_id: str,
        mutate: Callable[[dict[str, Any]], dict[str, Any]],
        expected_version: int | None = None,
    ) -> StoreResult:
        """See VersionGate.update_with_retry."""
        return await self.gate.update_with_retry(entity_id, mutate, expected_version)

    async def delete(self, entity_id: str) -> StoreResult:
        """Remove an entity. value is False when it was not present."""
        async with self._mutation():
            entities = await self._read_for_write("delete")
            if entities is None:
                return StoreResult.failure("collection unavailable", value=False)

            remaining = [e for e in entities if str(e.get("id")) != entity_id]
            if len(remaining) == len(entities):
                return StoreResult.success(False, found=False)

            result = await self.save_all(remaining)
        return StoreResult.success(True) if result.ok else StoreResult.failure(
            result.reason or "save failed", value=False
        )

    async def modify(
        self,
        entity_id: str,
        mutate: Callable[[dict[str, Any]], dict[str, Any]],
        operation: str = "modify",
    ) -> StoreResult:
        """Apply mutate to one stored entity without a version check.

        Returns:
            StoreResult with the updated entity, or value None and
            found=False when no entity has this id
        """
        async with self._mutation():
            entities = await self._read_for_write(operation)
            if entities is None:
                return StoreResult.failure("collection unavailable")

            for index, entity in enumerate(entities):
                if str(entity.get("id")) == entity_id:
                    updated = mutate(copy.deepcopy(entity))
                    updated["id"] = entity["id"]
                    entities[index] = updated
                    break
            else:
                return StoreResult.success(None, found=False)

            result = await self.save_all(entities)
        return StoreResult.success(updated) if result.ok else result

    async def soft_delete(self, entity_id: str, actor: str | None = None) -> StoreResult:
        """Mark an entity deleted without removing it."""
        deleted_at = utc_now_iso()

        def mark(entity: dict[str, Any]) -> dict[str, Any]:
            entity[DELETED_AT] = deleted_at
            if actor:
                entity[DELETED_BY] = actor
            return entity

        return await self.modify(entity_id, mark, "soft_delete")

    async def restore(self, entity_id: str) -> StoreResult:
        """Clear the deletedAt marker."""

        def unmark(entity: dict[str, Any]) -> dict[str, Any]:
            entity.pop(DELETED_AT, None)
            entity.pop(DELETED_BY, None)
            return entity

        return await self.modify(entity_id, unmark, "restore")

    # Bulk paths

    async def bulk_sync(self, batch: list[dict[str, Any]]) -> StoreResult:
        """Merge a client-submitted batch into the collection.

        Returns:
            StoreResult whose value is a SyncReport
        """
        incoming, dropped = dedupe_by_id(batch, source="bulk_sync")
        report = SyncReport(received=len(batch), incoming_duplicates=dropped)

        async with self._mutation():
            if self.rows is not None:
                try:
                    await self._sync_rows(incoming, report)
                except Exception as e:
                    logger.error(
                        "Bulk sync failed",
                        extra={"operation": "bulk_sync", "path": self.path, "error": str(e)},
                    )
                    return StoreResult.failure(str(e), value=report)
            else:
                result = await self._sync_document(incoming, report)
                if not result.ok:
                    return StoreResult.failure(result.reason or "save failed", value=report)

        logger.info(
            "Bulk sync complete",
            extra={"path": self.path, **report.to_dict()},
        )
        return StoreResult.success(report)

    async def _sync_document(self, incoming: list[dict[str, Any]], report: SyncReport) -> StoreResult:
        entities = await self._read_for_write("bulk_sync")
        if entities is None:
            return StoreResult.failure("collection unavailable")

        positions = {str(e.get("id")): i for i, e in enumerate(entities)}
        for entity in incoming:
            entity_id = str(entity["id"])
            if entity_id in positions:
                entities[positions[entity_id]] = entity
                report.updated += 1
            else:
                positions[entity_id] = len(entities)
                entities.append(entity)
                report.inserted += 1
        return await self.save_all(entities)

    async def _sync_rows(self, incoming: list[dict[str, Any]], report: SyncReport) -> None:
        rows = self.rows
        assert rows is not None

        stored = await self.blob.retry(lambda: rows.read_rows(self.path), f"read rows {self.path}")
        first_row: dict[str, int] = {}
        duplicate_rows: list[int] = []
        for row in stored:
            record_id = row.record_id
            if record_id is None:
                continue
            if record_id in first_row:
                duplicate_rows.append(row.row_number)
                logger.warning(
                    "Removing duplicate stored row",
                    extra={"path": self.path, "entity_id": record_id, "row_number": row.row_number},
                )
            else:
                first_row[record_id] = row.row_number

        if duplicate_rows:
            report.stored_duplicates_removed = await self.blob.retry(
                lambda: rows.delete_rows(self.path, duplicate_rows),
                f"delete rows {self.path}",
            )

        inserted: set[str] = set()
        for entity in incoming:
            entity_id = str(entity["id"])
            row_number = first_row.get(entity_id)
            if row_number is not None:
                updated = await self.blob.retry(
                    lambda: rows.update_row(self.path, row_number, entity),
                    f"update row {self.path}",
                )
                if updated:
                    report.updated += 1
                    continue
            # Re-check right before inserting; the scan above may be stale.
            if entity_id in inserted:
                logger.warning(
                    "Skipping insert of already inserted entity",
                    extra={"path": self.path, "entity_id": entity_id},
                )
                continue
            inserted.add(entity_id)
            first_row[entity_id] = await self.blob.retry(
                lambda: rows.append_row(self.path, entity),
                f"append row {self.path}",
            )
            report.inserted += 1

    async def push_full(self, entities: list[dict[str, Any]]) -> StoreResult:
        """Replace the whole collection.

        Tabular: clear then rewrite row by row. Blob: one overwrite. Not
        atomic on tabular backends; a failure midway leaves a partial sheet.
        """
        kept, _ = dedupe_by_id(entities, source="push_full")
        async with self._mutation():
            if self.rows is None:
                return await self.save_all(kept)

            rows = self.rows
            try:
                await self.blob.retry(lambda: rows.clear(self.path), f"clear {self.path}")
                for entity in kept:
                    await self.blob.retry(
                        lambda entity=entity: rows.append_row(self.path, entity),
                        f"append row {self.path}",
                    )
            except Exception as e:
                logger.error(
                    "Full push failed",
                    extra={"operation": "push_full", "path": self.path, "error": str(e)},
                )
                return StoreResult.failure(str(e))
        return StoreResult.success(kept)


class SingletonDocument:
    """A single JSON object document, such as data/config.json."""

    def __init__(self, blob: BlobStore, path: str, lock: KeyedMutationLock) -> None:
        self.blob = blob
        self.path = path
        self.lock = lock

    async def get(self) -> dict[str, Any]:
        return await self.blob.load(self.path, {})

    async def replace(self, value: dict[str, Any]) -> StoreResult:
        async with self.lock.hold(self.path):
            return await self.blob.save(self.path, value, cache_control=PRIVATE_NO_STORE)

    async def merge(self, changes: dict[str, Any]) -> StoreResult:
        """Shallow-merge changes into the stored object."""
        async with self.lock.hold(self.path):
            current = await self.blob.read(self.path, {})
            if not current.ok and not current.corrupt:
                return StoreResult.failure(current.reason or "read failed")
            merged = copy.deepcopy(current.value)
            merged.update(changes)
            return await self.blob.save(self.path, merged, cache_control=PRIVATE_NO_STORE)

"""
Point-in-time snapshots of the initiative collection.

Each snapshot is one self-contained, immutable document
``snapshots/<id>.json`` holding ``{id, timestamp, data}``. Snapshots are
never diffed against each other; any one of them restores on its own. The
snapshot timestamp is also written as object metadata so list() does not
need to download every snapshot.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ..blob.result import StoreResult
from ..blob.store import BlobStore
from ..locking import KeyedMutationLock

logger = logging.getLogger(__name__)

SNAPSHOTS_PREFIX = "snapshots/"

_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


@dataclass(frozen=True)
class SnapshotInfo:
    id: str
    timestamp: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "timestamp": self.timestamp}


def new_snapshot(data: list[dict[str, Any]], name: str | None = None) -> dict[str, Any]:
    """Build a snapshot document for data taken now."""
    now = datetime.now(timezone.utc)
    snapshot_id = f"snap_{now:%Y%m%d%H%M%S%f}"
    if name:
        snapshot_id = f"{snapshot_id}_{_NAME_UNSAFE.sub('_', name)}"
    return {
        "id": snapshot_id,
        "timestamp": now.isoformat().replace("+00:00", "Z"),
        "data": data,
    }


class SnapshotStore:
    """Create, list and load snapshots.

    Example:
        >>> snapshots = SnapshotStore(blob)
        >>> await snapshots.create(new_snapshot(await initiatives.load_all()))
        >>> for info in await snapshots.list():
        ...     print(info.id, info.timestamp)
    """

    def __init__(
        self,
        blob: BlobStore,
        lock: KeyedMutationLock | None = None,
        prefix: str = SNAPSHOTS_PREFIX,
    ) -> None:
        self.blob = blob
        self.lock = lock if lock is not None else KeyedMutationLock()
        self.prefix = prefix

    def path_for(self, snapshot_id: str) -> str:
        return f"{self.prefix}{snapshot_id}.json"

    async def create(self, snapshot: dict[str, Any]) -> StoreResult:
        """Write a new snapshot. It must carry id and timestamp.

        An existing snapshot is never overwritten.
        """
        snapshot_id = snapshot.get("id")
        if not snapshot_id or "/" in str(snapshot_id):
            return StoreResult.failure(f"invalid snapshot id: {snapshot_id!r}")

        path = self.path_for(str(snapshot_id))
        async with self.lock.hold(path):
            if await self.blob.exists(path):
                return StoreResult.failure(f"snapshot already exists: {snapshot_id}")
            result = await self.blob.save(
                path,
                snapshot,
                metadata={"timestamp": str(snapshot.get("timestamp", ""))},
            )
        if result.ok:
            logger.info(
                "Snapshot created",
                extra={"snapshot_id": snapshot_id, "entities": len(snapshot.get("data") or [])},
            )
        return result

    async def list(self) -> list[SnapshotInfo]:
        """Every snapshot id with its stored timestamp, newest first."""
        listing = await self.blob.list(self.prefix, include_metadata=True)
        snapshots = [
            SnapshotInfo(
                id=info.path[len(self.prefix) :].removesuffix(".json"),
                timestamp=info.metadata.get("timestamp", ""),
            )
            for info in listing.value
            if info.path.endswith(".json")
        ]
        return sorted(snapshots, key=lambda s: s.timestamp, reverse=True)

    async def load(self, snapshot_id: str) -> dict[str, Any] | None:
        """The snapshot, or None if it does not exist or cannot be read."""
        result = await self.blob.read(self.path_for(snapshot_id), {})
        if not result.ok or not result.found:
            return None
        return result.value

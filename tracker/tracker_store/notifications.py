"""
Per-user notification lists.

Each user has one document ``data/notifications/<userId>.json``: a JSON
array ordered newest first and bounded to the most recent ``cap`` entries.

Every read-modify-write cycle (add, mark read, mark all read, clear) runs
under the KeyedMutationLock key ``notifications:<userId>``, so concurrent
operations for one user never lose an update while different users never
wait on each other.

After a notification is persisted, a ``notification:received`` event is
published to the broadcaster. Publishing is fire-and-forget: a broadcast
failure never fails the write.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any

from .blob.result import StoreResult
from .blob.store import PRIVATE_NO_STORE, BlobStore
from .broadcast import NOTIFICATION_RECEIVED, Broadcaster
from .locking import KeyedMutationLock

logger = logging.getLogger(__name__)

NOTIFICATIONS_PREFIX = "data/notifications/"
DEFAULT_CAP = 100

_UNSAFE_KEY = re.compile(r"[^A-Za-z0-9@._+-]")


def lock_key_for_path(path: str) -> str | None:
    """Lock key guarding a stored notification document, None for other paths.

    Users whose ids map to the same file share one key.
    """
    if not path.startswith(NOTIFICATIONS_PREFIX) or not path.endswith(".json"):
        return None
    stem = path[len(NOTIFICATIONS_PREFIX) :].removesuffix(".json")
    return f"notifications:{stem}"


class NotificationStore:
    """Bounded newest-first notification list per user.

    Attributes:
        blob: Document store
        lock: Shared per-key lock registry
        broadcaster: Event channel notified after successful adds
        cap: Maximum notifications kept per user
    """

    def __init__(
        self,
        blob: BlobStore,
        lock: KeyedMutationLock,
        broadcaster: Broadcaster | None = None,
        cap: int = DEFAULT_CAP,
    ) -> None:
        self.blob = blob
        self.lock = lock
        self.broadcaster = broadcaster
        self.cap = cap

    def path_for(self, user_id: str) -> str:
        return f"{NOTIFICATIONS_PREFIX}{_UNSAFE_KEY.sub('_', user_id)}.json"

    def lock_key(self, user_id: str) -> str:
        return f"notifications:{_UNSAFE_KEY.sub('_', user_id)}"

    async def list(self, user_id: str) -> list[dict[str, Any]]:
        """Notifications of a user, newest first; [] before any write."""
        return await self.blob.load(self.path_for(user_id), [])

    async def _read_for_write(self, user_id: str, operation: str) -> list[dict[str, Any]] | None:
        path = self.path_for(user_id)
        result = await self.blob.read(path, [])
        if not result.ok and not result.corrupt:
            logger.error(
                "Aborting notification write, list could not be read",
                extra={"operation": operation, "key": user_id, "error": result.reason},
            )
            return None
        return result.value

    async def _save(self, user_id: str, notifications: list[dict[str, Any]]) -> StoreResult:
        return await self.blob.save(
            self.path_for(user_id), notifications, cache_control=PRIVATE_NO_STORE
        )

    async def add(self, user_id: str, notification: dict[str, Any]) -> StoreResult:
        """Insert at the front and trim to cap. value is the stored notification."""
        stored = {
            "id": notification.get("id") or f"notif_{uuid.uuid4().hex[:12]}",
            "read": False,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            **notification,
            "userId": user_id,
        }

        async with self.lock.hold(self.lock_key(user_id)):
            notifications = await self._read_for_write(user_id, "add")
            if notifications is None:
                return StoreResult.failure("notifications unavailable")
            notifications.insert(0, stored)
            del notifications[self.cap :]
            result = await self._save(user_id, notifications)

        if not result.ok:
            return result

        self._publish(user_id, stored)
        return StoreResult.success(stored)

    def _publish(self, user_id: str, notification: dict[str, Any]) -> None:
        if self.broadcaster is None:
            return
        try:
            self.broadcaster.publish(
                NOTIFICATION_RECEIVED, {"userId": user_id, "notification": notification}
            )
        except Exception as e:
            logger.warning(
                "Notification broadcast failed",
                extra={"key": user_id, "notification_id": notification.get("id"), "error": str(e)},
            )

    async def mark_read(self, user_id: str, notification_id: str) -> StoreResult:
        """Mark one notification read. value is False if it does not exist."""
        async with self.lock.hold(self.lock_key(user_id)):
            notifications = await self._read_for_write(user_id, "mark_read")
            if notifications is None:
                return StoreResult.failure("notifications unavailable", value=False)

            for notification in notifications:
                if notification.get("id") == notification_id:
                    notification["read"] = True
                    break
            else:
                return StoreResult.success(False, found=False)

            result = await self._save(user_id, notifications)
        return StoreResult.success(True) if result.ok else StoreResult.failure(
            result.reason or "save failed", value=False
        )

    async def mark_all_read(self, user_id: str) -> StoreResult:
        """Mark every notification read. value is the number changed."""
        async with self.lock.hold(self.lock_key(user_id)):
            notifications = await self._read_for_write(user_id, "mark_all_read")
            if notifications is None:
                return StoreResult.failure("notifications unavailable", value=0)

            changed = 0
            for notification in notifications:
                if not notification.get("read"):
                    notification["read"] = True
                    changed += 1
            if not changed:
                return StoreResult.success(0)

            result = await self._save(user_id, notifications)
        return StoreResult.success(changed) if result.ok else StoreResult.failure(
            result.reason or "save failed", value=0
        )

    async def clear(self, user_id: str) -> StoreResult:
        """Remove every notification of a user."""
        async with self.lock.hold(self.lock_key(user_id)):
            return await self._save(user_id, [])

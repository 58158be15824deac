"""
Whole-namespace backups of the ``data/`` documents.

A backup copies every document under ``data/`` into
``backups/<backup_id>/`` and writes ``backups/<backup_id>/manifest.json``
describing what was copied. Backup ids start with the UTC date
(``2025-12-25-manual-10-00-00``) so listing them sorts chronologically.

Restoring first takes a best-effort restore point of the current data
under ``backups/restore-points/``, then copies the selected files back.
Each file is copied back under the same lock key its store writes with,
so a restore never interleaves with a read-modify-write of that document.

Invariants:
    - Relative paths under data/ are preserved (data/notifications/u1.json
      backs up to backups/<id>/notifications/u1.json)
    - Manifest status is "completed" when every file copied, "partial" when
      some did, "failed" when none did
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any

from ..blob.store import BlobStore
from ..locking import KeyedMutationLock
from ..notifications import lock_key_for_path

logger = logging.getLogger(__name__)

DATA_PREFIX = "data/"
BACKUPS_PREFIX = "backups/"
RESTORE_POINTS_PREFIX = f"{BACKUPS_PREFIX}restore-points/"
MANIFEST = "manifest.json"

STATUS_COMPLETED = "completed"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"

_BACKUP_ID = re.compile(r"^(\d{4}-\d{2}-\d{2})")
_LABEL_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


def _utc_iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


class BackupService:
    """Create, list, verify and restore backups of data/.

    Example:
        >>> backups = BackupService(blob, lock)
        >>> manifest = await backups.create_backup(label="before-import", reporter="ops@example.com")
        >>> await backups.restore_backup(manifest["id"], files=["initiatives.json"])
    """

    def __init__(self, blob: BlobStore, lock: KeyedMutationLock | None = None) -> None:
        self.blob = blob
        self.lock = lock if lock is not None else KeyedMutationLock()

    def _backup_root(self, backup_id: str) -> str:
        return f"{BACKUPS_PREFIX}{backup_id}/"

    async def _data_files(self) -> tuple[list[tuple[str, int]], str | None]:
        listing = await self.blob.list(DATA_PREFIX)
        files = [
            (info.path[len(DATA_PREFIX) :], info.size)
            for info in listing.value
            if not info.path.endswith("/")
        ]
        return files, None if listing.ok else listing.reason

    async def create_backup(
        self,
        label: str | None = None,
        reporter: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Copy every data/ document and write the manifest.

        Returns:
            The manifest
        """
        started = time.monotonic()
        now = now or datetime.now(timezone.utc)
        safe_label = _LABEL_UNSAFE.sub("_", label) if label else "manual"
        backup_id = f"{now:%Y-%m-%d}-{safe_label}-{now:%H-%M-%S}"
        root = self._backup_root(backup_id)

        manifest: dict[str, Any] = {
            "id": backup_id,
            "date": f"{now:%Y-%m-%d}",
            "timestamp": _utc_iso(now),
            "label": label,
            "reporter": reporter,
            "files": [],
            "totalSize": 0,
            "errors": [],
            "status": STATUS_COMPLETED,
            "duration": 0,
        }

        files, list_error = await self._data_files()
        if list_error:
            manifest["errors"].append(f"Listing data failed: {list_error}")

        for name, _ in files:
            copied = await self.blob.copy(DATA_PREFIX + name, root + name)
            if not copied.ok:
                manifest["errors"].append(f"Failed to back up {name}: {copied.reason}")
                continue
            if not copied.found:
                continue
            manifest["files"].append(
                {
                    "name": name,
                    "path": root + name,
                    "size": len(copied.value),
                    "md5Hash": hashlib.md5(copied.value).hexdigest(),
                }
            )
            manifest["totalSize"] += len(copied.value)

        if manifest["errors"]:
            manifest["status"] = STATUS_PARTIAL if manifest["files"] else STATUS_FAILED
        manifest["duration"] = int((time.monotonic() - started) * 1000)

        result = await self.blob.save(root + MANIFEST, manifest)
        if not result.ok:
            manifest["status"] = STATUS_FAILED
            manifest["errors"].append(f"Manifest write failed: {result.reason}")

        logger.info(
            "Backup created",
            extra={
                "backup_id": backup_id,
                "files": len(manifest["files"]),
                "total_size": manifest["totalSize"],
                "status": manifest["status"],
            },
        )
        return manifest

    async def get_backup(self, backup_id: str) -> dict[str, Any] | None:
        """Manifest of a backup, or None if there is none."""
        result = await self.blob.read(self._backup_root(backup_id) + MANIFEST, {})
        if not result.ok or not result.found:
            return None
        return result.value

    async def list_backups(self) -> list[dict[str, Any]]:
        """Summaries of every backup with a manifest, newest first."""
        listing = await self.blob.list(BACKUPS_PREFIX)
        backups = []
        for info in listing.value:
            relative = info.path[len(BACKUPS_PREFIX) :]
            backup_id, _, rest = relative.partition("/")
            if rest != MANIFEST or not _BACKUP_ID.match(backup_id):
                continue
            manifest = await self.get_backup(backup_id)
            if manifest is None:
                continue
            backups.append(
                {
                    "id": backup_id,
                    "date": manifest.get("date"),
                    "timestamp": manifest.get("timestamp"),
                    "files": len(manifest.get("files", [])),
                    "totalSize": manifest.get("totalSize", 0),
                    "status": manifest.get("status"),
                }
            )
        return sorted(backups, key=lambda b: b["id"], reverse=True)

    async def verify_backup(self, backup_id: str) -> dict[str, Any]:
        """Check every manifest file exists and matches its checksum."""
        report: dict[str, Any] = {"valid": True, "checked": 0, "failed": []}
        manifest = await self.get_backup(backup_id)
        if manifest is None:
            return {"valid": False, "checked": 0, "failed": ["Manifest not found"]}

        root = self._backup_root(backup_id)
        for entry in manifest.get("files", []):
            try:
                raw = await self.blob.retry(
                    lambda entry=entry: self.blob.backend.get(root + entry["name"]),
                    f"load {root}{entry['name']}",
                )
            except Exception as e:
                report["failed"].append(f"Unreadable: {entry['name']}: {e}")
                report["valid"] = False
                continue
            if raw is None:
                report["failed"].append(f"Missing: {entry['name']}")
                report["valid"] = False
                continue
            expected = entry.get("md5Hash")
            if expected and hashlib.md5(raw).hexdigest() != expected:
                report["failed"].append(f"Checksum mismatch: {entry['name']}")
                report["valid"] = False
            report["checked"] += 1
        return report

    async def _create_restore_point(self) -> str:
        stamp = f"{datetime.now(timezone.utc):%Y-%m-%dT%H-%M-%S-%f}"
        root = f"{RESTORE_POINTS_PREFIX}{stamp}/"
        files, _ = await self._data_files()
        for name, _ in files:
            copied = await self.blob.copy(DATA_PREFIX + name, root + name)
            if not copied.ok:
                logger.warning(
                    "Restore point incomplete",
                    extra={"path": DATA_PREFIX + name, "error": copied.reason},
                )
        return root

    async def restore_backup(self, backup_id: str, files: list[str] | None = None) -> dict[str, Any]:
        """Copy backed-up files back into data/.

        Args:
            backup_id: Backup to restore
            files: Names relative to data/; None restores every file

        Returns:
            {success, filesRestored, errors, backupId, restorePoint, timestamp}
        """
        outcome: dict[str, Any] = {
            "success": False,
            "filesRestored": 0,
            "errors": [],
            "backupId": backup_id,
            "restorePoint": None,
            "timestamp": _utc_iso(datetime.now(timezone.utc)),
        }

        manifest = await self.get_backup(backup_id)
        if manifest is None:
            outcome["errors"].append(f"Backup {backup_id} not found")
            return outcome

        outcome["restorePoint"] = await self._create_restore_point()

        root = self._backup_root(backup_id)
        entries = manifest.get("files", [])
        if files is not None:
            wanted = set(files)
            entries = [e for e in entries if e["name"] in wanted]

        for entry in entries:
            name = entry["name"]
            target = DATA_PREFIX + name
            async with self.lock.hold(lock_key_for_path(target) or target):
                copied = await self.blob.copy(root + name, target)
            if not copied.ok:
                outcome["errors"].append(f"Failed to restore {name}: {copied.reason}")
            elif not copied.found:
                outcome["errors"].append(f"Backup file not found: {root}{name}")
            else:
                outcome["filesRestored"] += 1

        outcome["success"] = outcome["filesRestored"] > 0 and not outcome["errors"]
        logger.info(
            "Backup restored",
            extra={
                "backup_id": backup_id,
                "files_restored": outcome["filesRestored"],
                "errors": len(outcome["errors"]),
            },
        )
        return outcome

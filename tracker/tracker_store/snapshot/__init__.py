"""Snapshots of the initiative collection and backups of data/."""

from .backup import BackupService
from .store import SNAPSHOTS_PREFIX, SnapshotInfo, SnapshotStore, new_snapshot

__all__ = [
    "SNAPSHOTS_PREFIX",
    "BackupService",
    "SnapshotInfo",
    "SnapshotStore",
    "new_snapshot",
]

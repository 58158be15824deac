"""
Composition of every store over one connected BlobStore.

Stores are constructed once here and passed explicitly to their
consumers (the HTTP layer, the restore tool, tests). Nothing in the
package looks stores up through module globals.
"""

from __future__ import annotations

from dataclasses import dataclass

from .backend.sqlite_table import SqliteTableBackend
from .blob import BlobStore
from .broadcast import LocalBroadcaster
from .collection import INITIATIVES_PATH, USERS_PATH, CollectionStore, SingletonDocument
from .config import RetentionConfig
from .locking import KeyedMutationLock
from .logs import ACTIVITY, ERRORS, AppendOnlyLog, BoundedLog
from .notifications import NotificationStore
from .records import ReportStore, SupportStore
from .snapshot import BackupService, SnapshotStore

CONFIG_PATH = "data/config.json"


@dataclass
class Services:
    blob: BlobStore
    lock: KeyedMutationLock
    broadcaster: LocalBroadcaster
    initiatives: CollectionStore
    users: CollectionStore
    settings: SingletonDocument
    changelog: BoundedLog
    errors: AppendOnlyLog
    activity: AppendOnlyLog
    snapshots: SnapshotStore
    backups: BackupService
    notifications: NotificationStore
    support: SupportStore
    reports: ReportStore
    retention: RetentionConfig


def build_services(
    blob: BlobStore,
    retention: RetentionConfig | None = None,
    broadcaster: LocalBroadcaster | None = None,
) -> Services:
    """Wire every store to blob with one shared lock registry.

    Row-level bulk operations are enabled when blob sits on a tabular
    backend.
    """
    retention = retention or RetentionConfig()
    lock = KeyedMutationLock()
    broadcaster = broadcaster or LocalBroadcaster()
    rows = blob.backend if isinstance(blob.backend, SqliteTableBackend) else None

    return Services(
        blob=blob,
        lock=lock,
        broadcaster=broadcaster,
        initiatives=CollectionStore(blob, INITIATIVES_PATH, lock, rows=rows),
        users=CollectionStore(blob, USERS_PATH, lock, rows=rows),
        settings=SingletonDocument(blob, CONFIG_PATH, lock),
        changelog=BoundedLog(blob, lock, cap=retention.changelog_cap),
        errors=AppendOnlyLog(blob, ERRORS, lock, cap=retention.log_file_cap),
        activity=AppendOnlyLog(blob, ACTIVITY, lock, cap=retention.log_file_cap),
        snapshots=SnapshotStore(blob, lock),
        backups=BackupService(blob, lock),
        notifications=NotificationStore(
            blob, lock, broadcaster=broadcaster, cap=retention.notification_cap
        ),
        support=SupportStore(blob, lock),
        reports=ReportStore(blob),
        retention=retention,
    )

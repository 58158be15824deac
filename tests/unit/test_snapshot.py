"""
Unit tests for SnapshotStore and BackupService.

Tests cover:
- Snapshot create, list ordering and load
- Backup manifests and relative paths
- Backup verification
- Restore with a restore point
"""

import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from tracker.tracker_store.backend import InMemoryBackend, StorageError
from tracker.tracker_store.blob import BlobStore
from tracker.tracker_store.locking import KeyedMutationLock
from tracker.tracker_store.notifications import NotificationStore
from tracker.tracker_store.snapshot import BackupService, SnapshotStore, new_snapshot


@pytest_asyncio.fixture
async def backend():
    backend = InMemoryBackend()
    await backend.connect()
    yield backend


@pytest.fixture
def blob(backend):
    return BlobStore(backend, base_delay_ms=1)


class TestSnapshotStore:
    """Tests for SnapshotStore."""

    def test_new_snapshot(self):
        snapshot = new_snapshot([{"id": "A"}], name="pre_restore")

        assert snapshot["id"].startswith("snap_")
        assert snapshot["id"].endswith("_pre_restore")
        assert snapshot["timestamp"].endswith("Z")
        assert snapshot["data"] == [{"id": "A"}]

    @pytest.mark.asyncio
    async def test_create_list_load(self, blob):
        snapshots = SnapshotStore(blob)
        older = {"id": "snap_1", "timestamp": "2024-12-19T10:00:00Z", "data": [{"id": "A"}]}
        newer = {"id": "snap_2", "timestamp": "2024-12-20T10:00:00Z", "data": []}

        assert (await snapshots.create(older)).ok
        assert (await snapshots.create(newer)).ok

        listed = await snapshots.list()
        assert [s.to_dict() for s in listed] == [
            {"id": "snap_2", "timestamp": "2024-12-20T10:00:00Z"},
            {"id": "snap_1", "timestamp": "2024-12-19T10:00:00Z"},
        ]
        assert await snapshots.load("snap_1") == older

    @pytest.mark.asyncio
    async def test_load_missing(self, blob):
        assert await SnapshotStore(blob).load("snap_none") is None

    @pytest.mark.asyncio
    async def test_rejects_invalid_id(self, blob):
        snapshots = SnapshotStore(blob)

        assert not (await snapshots.create({"id": "../data/users", "data": []})).ok
        assert not (await snapshots.create({"data": []})).ok

    @pytest.mark.asyncio
    async def test_existing_snapshot_is_never_overwritten(self, blob):
        snapshots = SnapshotStore(blob)
        first = {"id": "s1", "timestamp": "2024-12-19T10:00:00Z", "data": [{"id": "A"}]}

        assert (await snapshots.create(first)).ok
        second = await snapshots.create({"id": "s1", "timestamp": "2024-12-20T10:00:00Z", "data": []})

        assert not second.ok
        assert "already exists" in second.reason
        assert await snapshots.load("s1") == first

    @pytest.mark.asyncio
    async def test_concurrent_creates_of_one_id(self, blob, backend):
        backend.latency = 0.005
        snapshots = SnapshotStore(blob)

        results = await asyncio.gather(
            *(snapshots.create({"id": "s1", "timestamp": "t", "data": [{"n": n}]}) for n in range(3))
        )

        assert [r.ok for r in results].count(True) == 1

    def test_snapshot_name_is_path_safe(self):
        snapshot = new_snapshot([], name="../data/users")

        assert "/" not in snapshot["id"]
        assert snapshot["id"].endswith("___data_users")


class TestBackupService:
    """Tests for BackupService."""

    @pytest.fixture
    def backups(self, blob):
        return BackupService(blob)

    @pytest_asyncio.fixture
    async def seeded(self, blob):
        await blob.save("data/initiatives.json", [{"id": "A"}])
        await blob.save("data/notifications/u1.json", [])
        return blob

    @pytest.mark.asyncio
    async def test_create_backup_manifest(self, backups, seeded, backend):
        now = datetime(2025, 12, 25, 10, 0, 0, tzinfo=timezone.utc)

        manifest = await backups.create_backup(label="nightly", reporter="ops", now=now)

        assert manifest["id"] == "2025-12-25-nightly-10-00-00"
        assert manifest["status"] == "completed"
        assert sorted(f["name"] for f in manifest["files"]) == [
            "initiatives.json",
            "notifications/u1.json",
        ]
        assert manifest["totalSize"] == sum(f["size"] for f in manifest["files"])
        assert backend.raw("backups/2025-12-25-nightly-10-00-00/notifications/u1.json")
        assert backend.raw("backups/2025-12-25-nightly-10-00-00/manifest.json")

    @pytest.mark.asyncio
    async def test_partial_backup(self, backups, seeded, backend):
        backend.inject_failure(StorageError("denied"), operation="put")

        manifest = await backups.create_backup()

        assert manifest["status"] == "partial"
        assert len(manifest["files"]) == 1
        assert manifest["errors"]

    @pytest.mark.asyncio
    async def test_list_backups_newest_first(self, backups, seeded):
        await backups.create_backup(now=datetime(2025, 1, 1, tzinfo=timezone.utc))
        await backups.create_backup(now=datetime(2025, 1, 2, tzinfo=timezone.utc))

        listed = await backups.list_backups()

        assert [b["id"] for b in listed] == ["2025-01-02-manual-00-00-00", "2025-01-01-manual-00-00-00"]
        assert listed[0]["files"] == 2

    @pytest.mark.asyncio
    async def test_verify_detects_tampering(self, backups, seeded, backend):
        manifest = await backups.create_backup()
        root = f"backups/{manifest['id']}/"

        assert (await backups.verify_backup(manifest["id"]))["valid"]

        backend.write_raw(root + "initiatives.json", b"[]")
        report = await backups.verify_backup(manifest["id"])

        assert not report["valid"]
        assert report["failed"] == ["Checksum mismatch: initiatives.json"]

    @pytest.mark.asyncio
    async def test_verify_unknown_backup(self, backups):
        report = await backups.verify_backup("2025-01-01-manual-00-00-00")

        assert not report["valid"]

    @pytest.mark.asyncio
    async def test_restore_selected_files(self, backups, seeded, backend):
        manifest = await backups.create_backup()
        await seeded.save("data/initiatives.json", [{"id": "B"}])
        await seeded.save("data/notifications/u1.json", [{"id": "n1"}])

        outcome = await backups.restore_backup(manifest["id"], files=["initiatives.json"])

        assert outcome["success"]
        assert outcome["filesRestored"] == 1
        assert await seeded.load("data/initiatives.json", []) == [{"id": "A"}]
        assert await seeded.load("data/notifications/u1.json", []) == [{"id": "n1"}]
        restore_point = outcome["restorePoint"]
        assert await seeded.load(restore_point + "initiatives.json", []) == [{"id": "B"}]

    @pytest.mark.asyncio
    async def test_restore_unknown_backup(self, backups, backend):
        outcome = await backups.restore_backup("2025-01-01-manual-00-00-00")

        assert not outcome["success"]
        assert outcome["restorePoint"] is None
        assert backend.paths("backups/") == []

    @pytest.mark.asyncio
    async def test_restore_waits_for_notification_writer(self, blob, seeded):
        lock = KeyedMutationLock()
        backups = BackupService(blob, lock)
        notifications = NotificationStore(blob, lock)
        await notifications.add("u1", {"id": "old"})
        manifest = await backups.create_backup()

        release = await lock.acquire(notifications.lock_key("u1"))
        restore = asyncio.create_task(
            backups.restore_backup(manifest["id"], files=["notifications/u1.json"])
        )
        await asyncio.sleep(0.01)
        assert not restore.done()
        await blob.save("data/notifications/u1.json", [{"id": "new"}, {"id": "junk"}])
        release()
        outcome = await restore

        assert outcome["success"]
        assert [n["id"] for n in await notifications.list("u1")] == ["old"]

    @pytest.mark.asyncio
    async def test_restore_waits_for_collection_writer(self, blob, seeded):
        lock = KeyedMutationLock()
        backups = BackupService(blob, lock)
        manifest = await backups.create_backup()

        release = await lock.acquire("data/initiatives.json")
        restore = asyncio.create_task(backups.restore_backup(manifest["id"], files=["initiatives.json"]))
        await asyncio.sleep(0.01)
        assert not restore.done()
        await blob.save("data/initiatives.json", [{"id": "B"}])
        release()
        await restore

        assert await blob.load("data/initiatives.json", []) == [{"id": "A"}]

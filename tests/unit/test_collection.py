"""
Unit tests for CollectionStore and VersionGate.

Tests cover:
- Upsert replace-by-id and append
- Deduplication of incoming batches and stored documents
- Delete and soft delete
- Version conflicts with one automatic retry
- Aborting writes when the collection cannot be read
"""

import asyncio
import json
import logging

import pytest
import pytest_asyncio

from tracker.tracker_store.backend import InMemoryBackend, StorageError
from tracker.tracker_store.blob import BlobStore
from tracker.tracker_store.collection import (
    INITIATIVES_PATH,
    CollectionStore,
    ConflictError,
    EntityNotFoundError,
    SingletonDocument,
    dedupe_by_id,
)
from tracker.tracker_store.locking import KeyedMutationLock


@pytest_asyncio.fixture
async def backend():
    backend = InMemoryBackend()
    await backend.connect()
    yield backend


@pytest.fixture
def blob(backend):
    return BlobStore(backend, base_delay_ms=1)


@pytest.fixture
def initiatives(blob):
    return CollectionStore(blob, INITIATIVES_PATH, KeyedMutationLock())


class TestDedupe:
    """Tests for dedupe_by_id."""

    def test_keeps_first_occurrence(self, caplog):
        caplog.set_level(logging.WARNING)
        kept, dropped = dedupe_by_id(
            [{"id": "A", "n": 1}, {"id": "B"}, {"id": "A", "n": 2}], source="test"
        )

        assert kept == [{"id": "A", "n": 1}, {"id": "B"}]
        assert dropped == 1
        assert "Dropping duplicate entity" in caplog.text

    def test_drops_entities_without_id(self):
        kept, dropped = dedupe_by_id([{"title": "no id"}, {"id": ""}, {"id": "X"}], source="test")

        assert kept == [{"id": "X"}]
        assert dropped == 2


class TestCollectionStore:
    """Tests for CollectionStore over a blob backend."""

    @pytest.mark.asyncio
    async def test_load_all_absent_is_empty(self, initiatives):
        assert await initiatives.load_all() == []

    @pytest.mark.asyncio
    async def test_upsert_same_id_twice_keeps_second(self, initiatives):
        await initiatives.upsert({"id": "X", "v": 1})
        await initiatives.upsert({"id": "X", "v": 2})

        assert await initiatives.load_all() == [{"id": "X", "v": 2}]

    @pytest.mark.asyncio
    async def test_upsert_appends_new_ids(self, initiatives):
        await initiatives.upsert({"id": "A"})
        await initiatives.upsert({"id": "B"})

        assert [e["id"] for e in await initiatives.load_all()] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_upsert_requires_id(self, initiatives):
        result = await initiatives.upsert({"title": "no id"})

        assert not result.ok

    @pytest.mark.asyncio
    async def test_concurrent_upserts_lose_nothing(self, initiatives, backend):
        backend.latency = 0.001

        await asyncio.gather(*(initiatives.upsert({"id": f"I-{n}"}) for n in range(20)))

        assert sorted(e["id"] for e in await initiatives.load_all()) == sorted(
            f"I-{n}" for n in range(20)
        )

    @pytest.mark.asyncio
    async def test_stored_duplicates_hidden_on_read(self, initiatives, backend):
        backend.write_raw(INITIATIVES_PATH, b'[{"id": "A", "n": 1}, {"id": "A", "n": 2}]')

        assert await initiatives.load_all() == [{"id": "A", "n": 1}]

    @pytest.mark.asyncio
    async def test_delete(self, initiatives):
        await initiatives.upsert({"id": "A"})

        deleted = await initiatives.delete("A")
        absent = await initiatives.delete("A")

        assert deleted.ok and deleted.value is True
        assert absent.ok and absent.value is False
        assert await initiatives.load_all() == []

    @pytest.mark.asyncio
    async def test_soft_delete_and_restore(self, initiatives):
        await initiatives.upsert({"id": "A"})
        await initiatives.upsert({"id": "B"})

        result = await initiatives.soft_delete("A", actor="lead@example.com")

        assert result.value["deletedAt"]
        assert result.value["deletedBy"] == "lead@example.com"
        assert [e["id"] for e in await initiatives.list_active()] == ["B"]
        assert len(await initiatives.load_all()) == 2

        await initiatives.restore("A")
        assert [e["id"] for e in await initiatives.list_active()] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_soft_delete_missing(self, initiatives):
        result = await initiatives.soft_delete("nope")

        assert result.ok
        assert result.value is None
        assert not result.found

    @pytest.mark.asyncio
    async def test_failed_read_aborts_write(self, initiatives, backend):
        await initiatives.upsert({"id": "A"})
        backend.inject_failure(StorageError("denied"), operation="get")

        result = await initiatives.upsert({"id": "B"})

        assert not result.ok
        assert await initiatives.load_all() == [{"id": "A"}]

    @pytest.mark.asyncio
    async def test_corrupt_document_is_superseded(self, initiatives, backend):
        backend.write_raw(INITIATIVES_PATH, b"garbage")

        result = await initiatives.upsert({"id": "A"})

        assert result.ok
        assert await initiatives.load_all() == [{"id": "A"}]


class TestBulkSyncBlob:
    """Tests for bulk_sync and push_full over a blob backend."""

    @pytest.mark.asyncio
    async def test_batch_with_duplicate_ids_keeps_first(self, initiatives, caplog):
        caplog.set_level(logging.WARNING)
        await initiatives.upsert({"id": "A", "title": "old"})

        result = await initiatives.bulk_sync(
            [{"id": "A", "title": "new"}, {"id": "B"}, {"id": "B", "title": "dup"}]
        )

        assert result.ok
        report = result.value
        assert report.incoming_duplicates == 1
        assert report.updated == 1
        assert report.inserted == 1
        assert await initiatives.load_all() == [{"id": "A", "title": "new"}, {"id": "B"}]
        assert "Dropping duplicate entity" in caplog.text

    @pytest.mark.asyncio
    async def test_push_full_replaces(self, initiatives):
        await initiatives.upsert({"id": "A"})

        result = await initiatives.push_full([{"id": "B"}, {"id": "C"}, {"id": "B"}])

        assert result.ok
        assert await initiatives.load_all() == [{"id": "B"}, {"id": "C"}]


class TestVersionGate:
    """Tests for version-checked updates."""

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, initiatives):
        await initiatives.upsert({"id": "A", "title": "t", "version": 3})

        result = await initiatives.update({"id": "A", "title": "t2", "version": 3})

        assert result.ok
        assert result.value["version"] == 4
        assert (await initiatives.get("A"))["version"] == 4

    @pytest.mark.asyncio
    async def test_missing_version_treated_as_zero(self, initiatives):
        await initiatives.upsert({"id": "A"})

        result = await initiatives.update({"id": "A", "version": 0, "title": "x"})

        assert result.value["version"] == 1

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, initiatives):
        await initiatives.upsert({"id": "A", "version": 2})

        with pytest.raises(ConflictError) as excinfo:
            await initiatives.update({"id": "A", "version": 1})

        assert excinfo.value.submitted == 1
        assert excinfo.value.stored == 2
        assert excinfo.value.current == {"id": "A", "version": 2}
        assert (await initiatives.get("A"))["version"] == 2

    @pytest.mark.asyncio
    async def test_update_unknown_entity(self, initiatives):
        with pytest.raises(EntityNotFoundError):
            await initiatives.update({"id": "nope", "version": 0})

    @pytest.mark.asyncio
    async def test_retry_once_after_conflict(self, initiatives):
        """A stale expected version is rebased on the stored entity once."""
        await initiatives.upsert({"id": "A", "status": "Open", "owner": "x", "version": 5})

        result = await initiatives.update_with_retry(
            "A", lambda current: {**current, "status": "Done"}, expected_version=4
        )

        assert result.ok
        assert result.value == {"id": "A", "status": "Done", "owner": "x", "version": 6}

    @pytest.mark.asyncio
    async def test_second_conflict_is_surfaced(self, initiatives, backend):
        """A concurrent writer on every attempt surfaces ConflictError."""
        await initiatives.upsert({"id": "A", "version": 0})
        calls = []

        def mutate(current):
            calls.append(current["version"])
            # Another writer commits between our read and our write.
            backend.write_raw(
                INITIATIVES_PATH,
                json.dumps([{"id": "A", "version": current["version"] + 10}]).encode(),
            )
            return {**current, "title": "mine"}

        with pytest.raises(ConflictError):
            await initiatives.update_with_retry("A", mutate)

        assert calls == [0, 10]
        assert await initiatives.get("A") == {"id": "A", "version": 20}

    @pytest.mark.asyncio
    async def test_retry_missing_entity(self, initiatives):
        with pytest.raises(EntityNotFoundError):
            await initiatives.update_with_retry("nope", lambda c: c)


class TestSingletonDocument:
    """Tests for SingletonDocument."""

    @pytest.mark.asyncio
    async def test_get_merge_replace(self, blob):
        settings = SingletonDocument(blob, "data/config.json", KeyedMutationLock())

        assert await settings.get() == {}

        await settings.merge({"quarter": "Q1"})
        await settings.merge({"capacity": 40})
        assert await settings.get() == {"quarter": "Q1", "capacity": 40}

        await settings.replace({"quarter": "Q2"})
        assert await settings.get() == {"quarter": "Q2"}

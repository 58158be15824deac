"""
Integration tests for collections stored in the tabular backend.

Tests cover:
- Bulk sync cleans up duplicate rows already in the sheet
- Row updates keep row numbers stable
- Full push rewrites the sheet
- Singleton documents and logs share the same backend
"""

import asyncio
import logging
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from tracker.tracker_store.backend import SqliteTableBackend
from tracker.tracker_store.blob import BlobStore
from tracker.tracker_store.collection import INITIATIVES_PATH
from tracker.tracker_store.services import build_services


@pytest_asyncio.fixture
async def tabular():
    with tempfile.TemporaryDirectory() as tmpdir:
        backend = SqliteTableBackend(str(Path(tmpdir) / "sheets.db"))
        await backend.connect()
        yield backend
        await backend.close()


@pytest.fixture
def services(tabular):
    return build_services(BlobStore(tabular, base_delay_ms=1))


class TestTabularCollection:
    """Tests for CollectionStore over SqliteTableBackend."""

    @pytest.mark.asyncio
    async def test_row_mode_enabled(self, services, tabular):
        assert services.initiatives.rows is tabular

    @pytest.mark.asyncio
    async def test_bulk_sync_removes_stored_duplicates(self, services, tabular, caplog):
        caplog.set_level(logging.WARNING)
        for record in ({"id": "A", "n": 1}, {"id": "B"}, {"id": "A", "n": 2}, {"id": "A", "n": 3}):
            await tabular.append_row(INITIATIVES_PATH, record)

        result = await services.initiatives.bulk_sync([{"id": "A", "n": 9}, {"id": "C"}])

        report = result.value
        assert result.ok
        assert report.stored_duplicates_removed == 2
        assert report.updated == 1
        assert report.inserted == 1
        rows = await tabular.read_rows(INITIATIVES_PATH)
        assert [r.record for r in rows] == [{"id": "A", "n": 9}, {"id": "B"}, {"id": "C"}]
        assert "Removing duplicate stored row" in caplog.text

    @pytest.mark.asyncio
    async def test_bulk_sync_updates_in_place(self, services, tabular):
        await services.initiatives.push_full([{"id": "A"}, {"id": "B"}])
        before = [r.row_number for r in await tabular.read_rows(INITIATIVES_PATH)]

        await services.initiatives.bulk_sync([{"id": "B", "status": "Done"}])

        rows = await tabular.read_rows(INITIATIVES_PATH)
        assert [r.row_number for r in rows] == before
        assert rows[1].record == {"id": "B", "status": "Done"}

    @pytest.mark.asyncio
    async def test_concurrent_bulk_syncs_do_not_duplicate(self, services, tabular):
        await asyncio.gather(
            services.initiatives.bulk_sync([{"id": "A"}, {"id": "B"}]),
            services.initiatives.bulk_sync([{"id": "B"}, {"id": "C"}]),
        )

        ids = [r.record_id for r in await tabular.read_rows(INITIATIVES_PATH)]
        assert sorted(ids) == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_push_full_and_document_reads(self, services):
        result = await services.initiatives.push_full([{"id": "A", "version": 1}, {"id": "A"}, {"id": "B"}])

        assert result.ok
        assert await services.initiatives.load_all() == [{"id": "A", "version": 1}, {"id": "B"}]

    @pytest.mark.asyncio
    async def test_version_checked_update(self, services):
        await services.initiatives.upsert({"id": "A", "version": 0})

        result = await services.initiatives.update({"id": "A", "title": "x", "version": 0})

        assert result.value["version"] == 1
        assert await services.initiatives.get("A") == {"id": "A", "title": "x", "version": 1}

    @pytest.mark.asyncio
    async def test_other_stores_share_backend(self, services):
        await services.settings.merge({"quarter": "Q1"})
        await services.changelog.append([{"initiativeId": "A"}])
        await services.notifications.add("u1", {"id": "n1"})

        assert await services.settings.get() == {"quarter": "Q1"}
        assert await services.changelog.get() == [{"initiativeId": "A"}]
        assert [n["id"] for n in await services.notifications.list("u1")] == ["n1"]

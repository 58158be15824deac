"""
Unit tests for NotificationStore and LocalBroadcaster.

Tests cover:
- Newest-first ordering and the per-user cap
- Mark read, mark all read and clear
- Concurrent adds for one user lose nothing
- Different users do not wait on each other
- Broadcast after a successful add
"""

import asyncio

import pytest
import pytest_asyncio

from tracker.tracker_store.backend import InMemoryBackend, StorageError
from tracker.tracker_store.blob import BlobStore
from tracker.tracker_store.broadcast import NOTIFICATION_RECEIVED, LocalBroadcaster
from tracker.tracker_store.locking import KeyedMutationLock
from tracker.tracker_store.notifications import NotificationStore, lock_key_for_path


@pytest_asyncio.fixture
async def backend():
    backend = InMemoryBackend()
    await backend.connect()
    yield backend


@pytest.fixture
def broadcaster():
    return LocalBroadcaster()


@pytest.fixture
def lock():
    return KeyedMutationLock()


@pytest.fixture
def notifications(backend, lock, broadcaster):
    return NotificationStore(BlobStore(backend, base_delay_ms=1), lock, broadcaster)


class TestNotificationStore:
    """Tests for NotificationStore."""

    @pytest.mark.asyncio
    async def test_add_mark_read_clear(self, notifications):
        assert await notifications.list("u1") == []

        await notifications.add("u1", {"id": "n1", "message": "first"})
        assert [n["id"] for n in await notifications.list("u1")] == ["n1"]

        await notifications.add("u1", {"id": "n2", "message": "second"})
        listed = await notifications.list("u1")
        assert [n["id"] for n in listed] == ["n2", "n1"]
        assert not any(n["read"] for n in listed)

        result = await notifications.mark_read("u1", "n1")
        assert result.value is True
        assert [n["read"] for n in await notifications.list("u1")] == [False, True]

        await notifications.clear("u1")
        assert await notifications.list("u1") == []

    @pytest.mark.asyncio
    async def test_add_stamps_fields(self, notifications):
        result = await notifications.add("u1", {"message": "hello", "userId": "someone-else"})

        stored = result.value
        assert stored["id"].startswith("notif_")
        assert stored["userId"] == "u1"
        assert stored["read"] is False
        assert stored["timestamp"]

    @pytest.mark.asyncio
    async def test_mark_read_missing(self, notifications):
        result = await notifications.mark_read("u1", "nope")

        assert result.ok
        assert result.value is False
        assert not result.found

    @pytest.mark.asyncio
    async def test_mark_all_read(self, notifications):
        for n in range(3):
            await notifications.add("u1", {"id": f"n{n}"})
        await notifications.mark_read("u1", "n0")

        result = await notifications.mark_all_read("u1")

        assert result.value == 2
        assert all(n["read"] for n in await notifications.list("u1"))

    @pytest.mark.asyncio
    async def test_cap(self, backend, lock):
        store = NotificationStore(BlobStore(backend), lock)

        for n in range(105):
            await store.add("u1", {"id": f"n{n}"})

        listed = await store.list("u1")
        assert len(listed) == 100
        assert listed[0]["id"] == "n104"
        assert listed[-1]["id"] == "n5"

    @pytest.mark.asyncio
    async def test_concurrent_adds_lose_nothing(self, notifications, backend):
        """Interleaved read-modify-write cycles under latency keep every add."""
        backend.latency = 0.005

        await asyncio.gather(*(notifications.add("u1", {"id": f"n{n}"}) for n in range(10)))

        assert sorted(n["id"] for n in await notifications.list("u1")) == sorted(
            f"n{n}" for n in range(10)
        )

    @pytest.mark.asyncio
    async def test_different_users_do_not_block(self, notifications, lock):
        release = await lock.acquire(notifications.lock_key("u1"))
        try:
            result = await asyncio.wait_for(notifications.add("u2", {"id": "n1"}), timeout=1)
        finally:
            release()

        assert result.ok

    @pytest.mark.asyncio
    async def test_user_ids_are_path_safe(self, notifications, backend):
        await notifications.add("../etc/passwd", {"id": "n1"})

        assert backend.paths("data/notifications/") == ["data/notifications/.._etc_passwd.json"]

    @pytest.mark.asyncio
    async def test_lock_key_matches_stored_path(self, notifications):
        for user_id in ("u1", "ops@example.com", "../etc/passwd"):
            assert lock_key_for_path(notifications.path_for(user_id)) == notifications.lock_key(user_id)

        assert lock_key_for_path("data/initiatives.json") is None

    @pytest.mark.asyncio
    async def test_failed_read_aborts_add(self, notifications, backend):
        await notifications.add("u1", {"id": "n1"})
        backend.inject_failure(StorageError("denied"), operation="get")

        result = await notifications.add("u1", {"id": "n2"})

        assert not result.ok
        assert [n["id"] for n in await notifications.list("u1")] == ["n1"]


class TestBroadcast:
    """Tests for LocalBroadcaster and notification events."""

    @pytest.mark.asyncio
    async def test_add_publishes_event(self, notifications, broadcaster):
        async with broadcaster.subscribe() as events:
            await notifications.add("u1", {"id": "n1", "message": "hi"})
            event = await asyncio.wait_for(events.get(), timeout=1)

        assert event.name == NOTIFICATION_RECEIVED
        assert event.payload["userId"] == "u1"
        assert event.to_dict()["data"]["notification"]["id"] == "n1"
        assert broadcaster.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_failed_add_does_not_publish(self, notifications, broadcaster, backend):
        backend.inject_failure(StorageError("denied"), operation="put")

        async with broadcaster.subscribe() as events:
            result = await notifications.add("u1", {"id": "n1"})

            assert not result.ok
            assert events.empty()

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_events(self, caplog):
        broadcaster = LocalBroadcaster(queue_size=1)

        async with broadcaster.subscribe() as events:
            broadcaster.publish("a", {})
            broadcaster.publish("b", {})

            assert events.qsize() == 1
            assert (await events.get()).name == "a"

        assert "Dropping event for slow subscriber" in caplog.text

    @pytest.mark.asyncio
    async def test_broadcast_failure_does_not_fail_add(self, backend, lock):
        class BrokenBroadcaster:
            def publish(self, name, payload):
                raise RuntimeError("socket closed")

        store = NotificationStore(BlobStore(backend), lock, BrokenBroadcaster())

        result = await store.add("u1", {"id": "n1"})

        assert result.ok
        assert len(await store.list("u1")) == 1

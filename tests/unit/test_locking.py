"""
Unit tests for KeyedMutationLock.

Tests cover:
- FIFO ordering per key
- Independence of keys
- Release on error
- Release races and cancellation
"""

import asyncio

import pytest

from tracker.tracker_store.locking import KeyedMutationLock


class TestKeyedMutationLock:
    """Tests for KeyedMutationLock."""

    @pytest.fixture
    def lock(self):
        return KeyedMutationLock()

    @pytest.mark.asyncio
    async def test_fifo_per_key(self, lock):
        """Holders of the same key run in issuance order, one at a time."""
        order = []
        active = 0

        async def worker(n):
            nonlocal active
            async with lock.hold("k"):
                active += 1
                assert active == 1
                order.append(n)
                await asyncio.sleep(0.01 * (5 - n))
                active -= 1

        await asyncio.gather(*(worker(n) for n in range(5)))

        assert order == [0, 1, 2, 3, 4]
        assert len(lock) == 0

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self, lock):
        entered = asyncio.Event()

        async def slow_holder():
            async with lock.hold("a"):
                await entered.wait()

        holder = asyncio.create_task(slow_holder())
        await asyncio.sleep(0)

        async with lock.hold("b"):
            entered.set()

        await asyncio.wait_for(holder, timeout=1)

    @pytest.mark.asyncio
    async def test_release_on_exception(self, lock):
        with pytest.raises(RuntimeError):
            async with lock.hold("k"):
                raise RuntimeError("boom")

        assert not lock.is_locked("k")
        async with lock.hold("k"):
            pass

    @pytest.mark.asyncio
    async def test_release_does_not_remove_newer_waiter(self, lock):
        """Releasing the first holder keeps the waiter's registry entry."""
        release_first = await lock.acquire("k")
        second = asyncio.create_task(lock.acquire("k"))
        await asyncio.sleep(0)

        release_first()
        assert lock.is_locked("k")

        release_second = await asyncio.wait_for(second, timeout=1)
        third = asyncio.create_task(lock.acquire("k"))
        await asyncio.sleep(0)
        assert not third.done()

        release_second()
        release_third = await asyncio.wait_for(third, timeout=1)
        release_third()
        assert not lock.is_locked("k")

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, lock):
        release = await lock.acquire("k")
        release()
        release()

        assert len(lock) == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_keeps_order(self, lock):
        """A waiter cancelled while queued hands over only after its predecessor."""
        release_first = await lock.acquire("k")
        cancelled = asyncio.create_task(lock.acquire("k"))
        await asyncio.sleep(0)
        third = asyncio.create_task(lock.acquire("k"))
        await asyncio.sleep(0)

        cancelled.cancel()
        with pytest.raises(asyncio.CancelledError):
            await cancelled
        await asyncio.sleep(0)
        assert not third.done()

        release_first()
        release_third = await asyncio.wait_for(third, timeout=1)
        release_third()
        assert not lock.is_locked("k")

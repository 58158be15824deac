"""
Per-key asynchronous mutex for read-modify-write cycles.

A KeyedMutationLock serializes coroutines that mutate the same document.
Each key has a chain of pending holders: a caller registers its own
pending entry immediately, then waits for the previous entry (if any) to
complete. Callers for the same key therefore run in issuance order, and
callers for different keys never wait on each other.

Invariants:
    - FIFO per key
    - release() is idempotent and only removes the registry entry if that
      entry still belongs to the releasing holder, so it can never delete a
      newer waiter's entry
    - A waiter cancelled while queued still passes its turn on in order
    - The registry only holds keys with a pending holder

Limitation:
    The lock is in-memory and per-process. It does not protect against
    concurrent writers in other processes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class KeyedMutationLock:
    """Instance-owned registry of per-key locks.

    Example:
        >>> locks = KeyedMutationLock()
        >>> async with locks.hold("notifications:u1"):
        ...     items = await store.load(path, [])
        ...     items.insert(0, item)
        ...     await store.save(path, items)
    """

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Future[None]] = {}

    async def acquire(self, key: str) -> Callable[[], None]:
        """Wait for every earlier holder of key, then take the lock.

        Returns:
            A release callable. It must be called exactly when the guarded
            operation ends; extra calls are ignored.
        """
        previous = self._tails.get(key)
        mine: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._tails[key] = mine

        def release() -> None:
            if not mine.done():
                mine.set_result(None)
            if self._tails.get(key) is mine:
                del self._tails[key]

        if previous is not None and not previous.done():
            try:
                await asyncio.shield(previous)
            except asyncio.CancelledError:
                # Keep the queue order: hand over only after our predecessor.
                previous.add_done_callback(lambda _: release())
                raise

        return release

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Scoped acquisition; release runs on every exit path."""
        release = await self.acquire(key)
        try:
            yield
        finally:
            release()

    def is_locked(self, key: str) -> bool:
        """Whether any holder or waiter is registered for key."""
        return key in self._tails

    def __len__(self) -> int:
        return len(self._tails)

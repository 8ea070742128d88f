"""In-process serialization of per-case mutations.

These guards cover coroutines inside one worker. Conditional writes in the
stores (status/version compare-and-swap, ``completed_at IS NULL``) cover
concurrent workers.
"""

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager, contextmanager
from typing import Iterator

from app.errors import ConcurrentModificationError


class KeyedLocks:
    """One asyncio.Lock per key, discarded once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class InFlightGuard:
    """Reject a second mutation for a key while one is in progress."""

    def __init__(self) -> None:
        self._active: set[Hashable] = set()

    @contextmanager
    def claim(self, key: Hashable) -> Iterator[None]:
        if key in self._active:
            raise ConcurrentModificationError(
                "Another update for this case is in progress; refresh and retry",
                caseId=str(key),
            )
        self._active.add(key)
        try:
            yield
        finally:
            self._active.discard(key)

    def is_active(self, key: Hashable) -> bool:
        return key in self._active

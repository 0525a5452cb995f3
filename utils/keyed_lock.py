"""Per-key asyncio locks with non-blocking acquisition."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from utils.addressing import normalize_address


class KeyedLocks:
    """Map of independent asyncio locks, one per key.

    `hold(key)` never waits for a busy key: it yields False when another task
    already holds that key, so callers can skip instead of queueing duplicate
    work. Locks for idle keys are dropped so the map stays bounded by the
    number of in-flight operations.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._locks: dict[str, asyncio.Lock] = {}
        self._idle = asyncio.Event()
        self._idle.set()

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(normalize_address(key))
        return bool(lock is not None and lock.locked())

    def held_keys(self) -> list[str]:
        return sorted(key for key, lock in self._locks.items() if lock.locked())

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[bool]:
        norm = normalize_address(key)
        lock = self._locks.get(norm)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[norm] = lock
        if lock.locked():
            yield False
            return
        await lock.acquire()
        self._idle.clear()
        try:
            yield True
        finally:
            lock.release()
            if self._locks.get(norm) is lock:
                del self._locks[norm]
            if not self.held_keys():
                self._idle.set()

    async def wait_idle(self, timeout: float) -> bool:
        """Wait until no key is held. Returns False when the timeout expires first."""
        if not self.held_keys():
            return True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            return False
        return True

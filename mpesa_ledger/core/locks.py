"""
Per-key asyncio locks.

Serializes work on the same key (an invoice) within a process while letting
different keys proceed concurrently. Database row locks cover the
multi-process case; this keeps same-process contenders from racing to the row.
"""
import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Dict, Hashable

import structlog

logger = structlog.get_logger(__name__)


class KeyedLock:
    """A registry of asyncio locks, created on demand and dropped when idle."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._holders: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            if lock.locked():
                logger.debug("keyed_lock_contended", key=str(key))
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

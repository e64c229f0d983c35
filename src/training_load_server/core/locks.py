"""Keyed single-writer locks.

Writes are serialized per key: record writes per matching window
(``records:{user_id}:{day}``), metrics writes per calendar date
(``metrics:{user_id}:{day}``) and whole recompute passes per user
(``pmc:{user_id}``). Reads never take a lock.

Lock ordering is pass lock before date lock; nothing acquires a pass lock
while holding a date lock.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date

import structlog

logger = structlog.get_logger()


def record_window_key(user_id: str, day: date) -> str:
    """Lock key guarding record creation/merge for one matching window."""
    return f"records:{user_id}:{day.isoformat()}"


def metrics_day_key(user_id: str, day: date) -> str:
    """Lock key guarding the DailyMetrics row of one calendar date."""
    return f"metrics:{user_id}:{day.isoformat()}"


def recompute_pass_key(user_id: str) -> str:
    """Lock key serializing PMC recompute passes for one user."""
    return f"pmc:{user_id}"


class KeyedLockManager:
    """In-process registry of asyncio locks, one per key.

    Locks are created on first use and dropped once nobody holds or waits
    on them, so the registry does not grow with the number of dates seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                logger.debug("Lock acquired", key=key)
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]
            logger.debug("Lock released", key=key)

    def is_locked(self, key: str) -> bool:
        """Return True if someone currently holds ``key``."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


lock_manager = KeyedLockManager()

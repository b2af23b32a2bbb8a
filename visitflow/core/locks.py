"""Per-key asyncio locks for check-then-act sequences."""

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


class KeyedLock:
    """
    Lazily created ``asyncio.Lock`` per key.

    Entries are reference counted and dropped once no task holds or waits on
    them, so the map only grows with the number of keys in flight.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """Serialize the block with every other holder of ``key``."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def is_locked(self, key: Hashable) -> bool:
        """Check whether a key is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


def slot_key(doctor_id: str, slot_date: object, time_slot: str) -> tuple:
    return ("slot", doctor_id, str(slot_date), time_slot)


def subject_key(subject_type: str, subject_id: object) -> tuple:
    return ("payment-subject", subject_type, str(subject_id))


def queue_key(department_id: str, queue_date: object) -> tuple:
    return ("queue", department_id, str(queue_date))


def record_key(kind: str, record_id: object) -> tuple:
    return (kind, str(record_id))

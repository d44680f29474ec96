"""Per-task mutual exclusion for state-mutating operations."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class TaskLocks:
    """
    Registry of one asyncio.Lock per task id.

    Operations on the same task are serialized; operations on different
    tasks never wait on each other. A lock is dropped once nobody holds or
    waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, task_id: str) -> AsyncIterator[None]:
        """Hold the lock for task_id for the duration of the block."""
        lock = self._locks.setdefault(task_id, asyncio.Lock())
        self._users[task_id] = self._users.get(task_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[task_id] -= 1
            if self._users[task_id] == 0:
                del self._users[task_id]
                del self._locks[task_id]

    def is_locked(self, task_id: str) -> bool:
        """Return True while some operation holds the task's lock."""
        lock = self._locks.get(task_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

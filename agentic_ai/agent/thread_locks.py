"""
Thread Locks — serialize turns within one thread.

Each thread id gets its own ``asyncio.Lock``; turns on different threads
never wait on each other. Locks are dropped once nobody holds or waits on
them, so the registry does not grow with the number of threads ever seen.

This only covers one process. Across processes the thread ``version``
check in ThreadService.append_turn rejects the second writer.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class ThreadLockRegistry:
    """Per-thread mutexes with reference counting."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, thread_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = self._locks[thread_id] = asyncio.Lock()
        self._refs[thread_id] = self._refs.get(thread_id, 0) + 1

        try:
            if lock.locked():
                logger.debug(f"[THREAD] Waiting for turn lock on {thread_id}")
            async with lock:
                yield
        finally:
            self._refs[thread_id] -= 1
            if self._refs[thread_id] == 0:
                del self._refs[thread_id]
                del self._locks[thread_id]

    def is_locked(self, thread_id: str) -> bool:
        lock = self._locks.get(thread_id)
        return lock is not None and lock.locked()

    @property
    def active_count(self) -> int:
        return len(self._locks)

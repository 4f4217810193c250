"""
Per-subject critical sections.

Transitions for one subject_id are serialized; different subjects proceed
in parallel. Locks are reference counted and dropped once nobody holds or
waits on them, so the table stays proportional to in-flight subjects.

Locks are process local. Running several workers against one database
requires serializing at the database instead.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class SubjectLocks:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._refcounts: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, subject_id: str) -> AsyncIterator[None]:
        """Enter the critical section of a subject."""
        lock = self._locks.get(subject_id)
        if lock is None:
            lock = self._locks[subject_id] = asyncio.Lock()
        self._refcounts[subject_id] = self._refcounts.get(subject_id, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._refcounts[subject_id] -= 1
            if self._refcounts[subject_id] == 0:
                del self._refcounts[subject_id]
                del self._locks[subject_id]

    def __len__(self) -> int:
        return len(self._locks)

"""
Per-business in-process locks.

Chain creation for one business is serialized in-process before it ever
reaches the database row lock, so threads of one worker process queue on a
cheap mutex instead of on the database.  Different businesses never share
a lock.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID


class BusinessLockRegistry:
    """Lazily creates one ``threading.Lock`` per business id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[UUID, threading.Lock] = {}

    def lock_for(self, business_id: UUID) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(business_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[business_id] = lock
            return lock

    @contextmanager
    def hold(self, business_id: UUID) -> Iterator[None]:
        """Hold the business's lock for the duration of the block."""
        lock = self.lock_for(business_id)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

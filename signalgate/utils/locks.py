"""Per-key lock registry for key-addressed state."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLocks:
    """Hand out one lock per key so unrelated keys never contend.

    Sections guarded by these locks must not await: they are short
    check-and-mutate blocks, which keeps them atomic across asyncio tasks and
    across threads alike.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def get(self, key: str) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is not None:
            return lock
        with self._registry_lock:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.get(key)
        with lock:
            yield

    def discard(self, key: str) -> None:
        """Forget the lock for a key that no longer has state."""
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

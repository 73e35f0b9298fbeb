from contextlib import contextmanager
from threading import Lock, RLock
from typing import Hashable, Iterator


class KeyedLocks:
    """One re-entrant lock per key, created on first use.

    ``hold`` takes several keys in sorted order so two callers locking the
    same pair of resources can never deadlock on each other.
    """

    def __init__(self):
        self._registry_lock = Lock()
        self._locks: dict[Hashable, RLock] = {}

    def _lock_for(self, key: Hashable) -> RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        ordered = sorted(set(keys), key=repr)
        acquired: list[RLock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


resource_locks = KeyedLocks()
policy_locks = KeyedLocks()

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Tuple

Key = Tuple[str, str]


class KeyedLock:
    """Per-key mutual exclusion.

    One ``threading.Lock`` per (bucket, name) pair, created on first use and
    dropped once no thread holds or waits for it. Unrelated keys never block
    each other.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Key, threading.Lock] = {}
        self._users: Dict[Key, int] = {}

    def _checkout(self, key: Key) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
                self._users[key] = 0
            self._users[key] += 1
            return lock

    def _checkin(self, key: Key):
        with self._guard:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, bucket: str, name: str):
        with self.hold_many(bucket, [name]):
            yield

    @contextmanager
    def hold_many(self, bucket: str, names: Iterable[str]):
        # Sorted acquisition order, so two batches can never deadlock
        keys = sorted({(bucket, name) for name in names})
        acquired = []
        try:
            for key in keys:
                lock = self._checkout(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def __len__(self):
        with self._guard:
            return len(self._locks)

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class LockRegistry:
    """Fixed pool of locks picked by key hash, so work on the same record runs
    one caller at a time and the pool never grows with the number of records.

    Unrelated keys may share a lock; the locks are re-entrant so one thread can
    hold two such keys at once.
    """

    def __init__(self, size: int = 64) -> None:
        if size < 1:
            raise ValueError("size must be at least 1")
        self._locks = tuple(threading.RLock() for _ in range(size))

    def lock_for(self, key: Hashable):
        return self._locks[hash(key) % len(self._locks)]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self.lock_for(key):
            yield

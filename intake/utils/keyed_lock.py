"""
Per-key mutual exclusion.

Operations on the same key (session id, identity) run one at a time;
operations on different keys never wait on each other. Locks are created
on first use and discarded once no thread holds or waits for them.
"""

import threading
from contextlib import contextmanager
from typing import Dict, List


class KeyedLock:
    """Registry of reference-counted locks, one per key"""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, number of threads holding or waiting]
        self._locks: Dict[str, List] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def active_keys(self) -> int:
        """Number of keys currently locked or contended (for debugging)"""
        with self._guard:
            return len(self._locks)

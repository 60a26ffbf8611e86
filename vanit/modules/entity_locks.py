"""
Entity Locks Module - VanIt Boarding & Emergency Service

Registry of per-entity mutexes. Operations on one boarding session or one
alert are serialized while operations on unrelated entities run concurrently.
Locks are reference counted and dropped once no thread holds or waits on them.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, List


class EntityLocks:
    """Keyed lock registry."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, List] = {}  # key -> [lock, users]

    @contextmanager
    def hold(self, *key: Hashable):
        """
        Hold the lock for an entity key for the duration of the block.

        Args:
            *key: Parts of the entity key, e.g. ('session', session_id)
        """
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1

        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)

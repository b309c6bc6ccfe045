"""
Locking primitives for per-entity serialization.

KeyedLock gives each subject/case its own re-entrant lock so that work on
different entities proceeds in parallel while work on one entity is strictly
ordered. A key's lock lives only while some thread holds or waits on it.
InFlightCounter lets shutdown() wait for running mutations.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, Optional


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class KeyedLock:
    """Re-entrant lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _LockEntry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class InFlightCounter:
    """Counts running operations and lets a closer wait until they finish."""

    def __init__(self):
        self._cond = threading.Condition()
        self._count = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def try_enter(self) -> bool:
        with self._cond:
            if self._closed:
                return False
            self._count += 1
            return True

    def exit(self) -> None:
        with self._cond:
            self._count -= 1
            if self._count <= 0:
                self._count = 0
                self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no operation is running. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout=timeout)

    def __len__(self) -> int:
        with self._cond:
            return self._count

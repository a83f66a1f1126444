"""Per-key mutual exclusion for allocation write paths."""

from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Hashable, Iterator


class KeyedLock:
    """Hands out one lock per key and forgets it when nobody holds it.

    Keys passed to ``hold`` are acquired in sorted order, so two callers that
    need overlapping key sets can never deadlock on each other.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[Hashable, Lock] = {}
        self._holders: dict[Hashable, int] = {}

    def _checkout(self, key: Hashable) -> Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
                self._holders[key] = 0
            self._holders[key] += 1
            return lock

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        ordered = sorted(set(keys), key=repr)
        acquired: list[tuple[Hashable, Lock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                lock.acquire()
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)

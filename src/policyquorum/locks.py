"""Per-key mutual exclusion for policy mutations.

Mutations on the same policy id serialize; different ids never contend.
Entries are reference-counted and dropped once no caller holds or waits on
them, so the table does not grow with the number of policies ever seen.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedLock:
    """Mutex keyed by string."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

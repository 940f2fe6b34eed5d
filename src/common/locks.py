"""Per-key advisory locks for callers that need stronger-than-last-writer-wins."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List


@dataclass
class _KeyEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class KeyedLock:
    """Map of key -> mutex; callers on the same key run one at a time.

    Entries are created on first use and dropped once the last waiter
    releases, so the map only holds keys with work in flight. Instances
    are injected where needed; there is no module-level lock table.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, _KeyEntry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _KeyEntry()
                self._entries[key] = entry
            entry.holders += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0 and self._entries.get(key) is entry:
                    del self._entries[key]

    def active_keys(self) -> List[str]:
        with self._guard:
            return sorted(self._entries)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

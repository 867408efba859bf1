"""
Per-session write serialization.

Every read-modify-write of a session (turn append, analytics recompute,
context countdown, rule side effects, termination) runs while holding the
session's lock, so two turns for the same session never interleave inside
this process.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.RLock()
        self.holders = 0


class SessionLockRegistry:
    """Re-entrant lock per session id; idle entries are dropped."""

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}
        self._guard = threading.Lock()

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(session_id)
            if entry is None:
                entry = self._entries[session_id] = _Entry()
            entry.holders += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(session_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

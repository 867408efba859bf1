"""
Session read cache.

The lifecycle controller receives a SessionCache instead of owning a
module-level dict, so a shared cache can replace the in-process one in
multi-instance deployments.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from models import Session


class SessionCache(ABC):
    """Best-effort cache of Session records keyed by session id."""

    @abstractmethod
    def get(self, session_id: str) -> Optional[Session]:
        """Return a fresh cached copy or None."""

    @abstractmethod
    def put(self, session: Session) -> None:
        """Store (or refresh) a session."""

    @abstractmethod
    def evict(self, session_id: str) -> None:
        """Drop a session if present."""

    @abstractmethod
    def clear(self) -> None:
        """Drop everything."""


class InMemorySessionCache(SessionCache):
    """
    Process-local cache bounded by capacity (LRU) and entry age.

    Freshness is measured from when the entry was last written, not from
    the session's own last_activity.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        capacity: int = 1000,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.capacity = capacity
        self._timer = timer
        self._entries: "OrderedDict[str, Tuple[float, Session]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            stored_at, session = entry
            if self._timer() - stored_at >= self.ttl_seconds:
                del self._entries[session_id]
                return None
            self._entries.move_to_end(session_id)
            return session.model_copy(deep=True)

    def put(self, session: Session) -> None:
        if self.capacity <= 0 or self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[session.id] = (self._timer(), session.model_copy(deep=True))
            self._entries.move_to_end(session.id)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def evict(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._entries

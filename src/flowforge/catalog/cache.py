"""TTL cache for catalog lookups.

Caches are plain objects injected into the services that use them, so a
session, a process or a test can each own one and clear it explicitly.
"""

import threading
import time
from typing import Any, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class TTLCache(Generic[T]):
    """Thread-safe key/value cache whose entries expire after ``ttl`` seconds."""

    def __init__(self, ttl: float, clock: Optional[Callable[[], float]] = None):
        self.ttl = ttl
        self._clock = clock or time.monotonic
        self._entries: dict[str, tuple[float, T]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[T]:
        """Return the cached value, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return value

    def set(self, key: str, value: T) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        """Entry count, live keys and hit/miss counters."""
        with self._lock:
            now = self._clock()
            live = sorted(k for k, (stored_at, _) in self._entries.items() if now - stored_at < self.ttl)
            return {"size": len(live), "keys": live, "hits": self._hits, "misses": self._misses, "ttl": self.ttl}

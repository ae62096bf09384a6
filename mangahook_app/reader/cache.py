"""
Short-lived cache of chapter page handles.

Handles (MangaDex at-home credentials, aggregator page lists) expire
upstream after a few minutes, so entries live READER_HANDLE_TTL seconds
(default 300) and are checked on read. Entries are immutable and replaced
wholesale; only successful fetches are ever stored.
"""

import os
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

DEFAULT_TTL = float(os.environ.get("READER_HANDLE_TTL", "300"))


class HandleCache:
    """Thread-safe TTL map. Usage: cache.get(key) or cache.put(key, handle)."""

    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: Hashable) -> Optional[Any]:
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

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 3) if total else 0.0,
                "ttl": self.ttl,
            }

# src/infrastructure/cache.py

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class _CacheEntry:
    data: Any
    timestamp: float
    tag: str


class ResponseCache:
    """
    Short-lived response cache shared by the handlers of one process.

    Constructed once in the application lifespan and handed to the routes
    through a dependency. Entries are a latency optimisation only: an
    expired entry is a miss and is dropped, never served.
    """

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def set(self, key: str, data: Any, tag: str) -> None:
        with self._lock:
            self._entries[key] = _CacheEntry(data=data, timestamp=self._clock(), tag=tag)
        logger.debug("Cache set: %s [%s]", key, tag)

    def get(self, key: str, tag: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            if entry.tag != tag:
                logger.debug("Cache tag mismatch for %s: %s != %s", key, entry.tag, tag)
                return None

            if self._clock() - entry.timestamp > self.ttl_seconds:
                del self._entries[key]
                logger.debug("Cache expired: %s", key)
                return None

            return entry.data

    def invalidate(self, pattern: str | None = None) -> int:
        """Drop entries whose key contains ``pattern``, or everything."""
        with self._lock:
            if pattern is None:
                removed = len(self._entries)
                self._entries.clear()
            else:
                keys = [key for key in self._entries if pattern in key]
                for key in keys:
                    del self._entries[key]
                removed = len(keys)

        logger.info("Cache invalidated %s entries (pattern=%s)", removed, pattern)
        return removed

    def clear(self) -> None:
        self.invalidate()

    def __len__(self) -> int:
        return len(self._entries)

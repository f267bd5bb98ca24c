"""
cache.py — In-process read cache for listings and analytics.

Entries expire after a TTL and are dropped explicitly by the write
operations that change what they summarize.
"""
import logging
import threading
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

FILE_LIST = "file-list"
ADMIN_FILE_LIST = "admin-file-list"
ANALYTICS_SUMMARY = "analytics-summary"

ALL_KEYS = (FILE_LIST, ADMIN_FILE_LIST, ANALYTICS_SUMMARY)
DEFAULT_TTL_SECONDS = 300


class InvalidatingCache:

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def remember(self, key: str, producer: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = producer()
        if value is not None:
            self.set(key, value)
        return value

    def invalidate(self, *keys: str) -> None:
        with self._lock:
            for key in keys or ALL_KEYS:
                self._entries.pop(key, None)
        logger.debug(f"Cache invalidated: {', '.join(keys or ALL_KEYS)}")

"""TTL key-value store holding the discovered tool catalog."""

import threading
import time
from typing import (
    Any,
    Callable,
)

from cachetools import TTLCache


class ToolCache:
    """
    Thread-safe in-memory cache with a fixed TTL.

    *timer* is forwarded to :class:`cachetools.TTLCache`, so tests can drive expiry with a fake
    clock.
    """

    def __init__(
        self, ttl: float = 3600, maxsize: int = 64, timer: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl = ttl
        self._lock = threading.RLock()
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._cache

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._cache.get(key, default)

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def forget(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

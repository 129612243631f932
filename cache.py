"""
Process-wide query cache.

LRU with a 30 second TTL. Writes do not invalidate entries on their own, so a
read right after a write may see data up to ``ttl`` seconds old. Write paths
that need fresh reads call ``invalidate_prefix`` for the collection they
touched.
"""
import logging
import threading
from typing import Any, Callable, Hashable

from cachetools import TTLCache

logger = logging.getLogger(__name__)

CACHE_SIZE = 100
CACHE_TTL = 30


class QueryCache:
    def __init__(self, maxsize: int = CACHE_SIZE, ttl: float = CACHE_TTL, timer: Callable[[], float] = None):
        kwargs = {"timer": timer} if timer is not None else {}
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl, **kwargs)
        self._lock = threading.RLock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._cache.get(key, default)

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def cached(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Return the cached value for key, calling loader on a miss."""
        with self._lock:
            if key in self._cache:
                return self._cache[key]
        value = loader()
        self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            stale = [k for k in list(self._cache.keys()) if isinstance(k, str) and k.startswith(prefix)]
            for k in stale:
                self._cache.pop(k, None)
        if stale:
            logger.debug("Invalidated %d cached queries for %s", len(stale), prefix)
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._cache

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


query_cache = QueryCache()

"""Per-user result cache for read-side aggregation results."""

from typing import Any, Dict, Hashable, List, Optional, Tuple
from threading import Lock

CacheKey = Tuple[str, Hashable]


class ResultCache:
    """Thread-safe LRU cache keyed by ``(user_id, key)``.

    Entries for a user are dropped as a whole when a new event for that user
    is committed, so cached aggregates never outlive the history they were
    computed from.
    """

    def __init__(self, max_size: int = 256):
        self._cache: Dict[CacheKey, Any] = {}
        self._access_order: List[CacheKey] = []
        self._max_size = max(1, int(max_size))
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def add(self, user_id: str, key: Hashable, value: Any) -> None:
        """Store ``value`` with LRU eviction."""
        cache_key = (user_id, key)
        with self._lock:
            if cache_key in self._cache:
                self._access_order.remove(cache_key)
            elif len(self._cache) >= self._max_size:
                lru_key = self._access_order.pop(0)
                self._cache.pop(lru_key, None)
            self._cache[cache_key] = value
            self._access_order.append(cache_key)

    def get(self, user_id: str, key: Hashable) -> Optional[Any]:
        """Retrieve a cached value, updating access order."""
        cache_key = (user_id, key)
        with self._lock:
            value = self._cache.get(cache_key)
            if value is None:
                self.misses += 1
                return None
            self.hits += 1
            self._access_order.remove(cache_key)
            self._access_order.append(cache_key)
            return value

    def invalidate_user(self, user_id: str) -> None:
        with self._lock:
            stale = [key for key in self._cache if key[0] == user_id]
            for key in stale:
                self._cache.pop(key, None)
                self._access_order.remove(key)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._access_order.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

"""In-process key-value cache with per-entry TTL.

One instance is constructed at service start and handed to every component
that needs it, instead of living as module-level state.
"""

import copy
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class TTLCache:
    """Simple in-memory cache with TTL expiration.

    Entries are stored as ``(value, expires_at)`` pairs. Expired entries are
    dropped lazily on read.
    """

    def __init__(self, default_ttl_seconds: int = 300, clock: Callable[[], float] = time.time):
        self._cache: Dict[str, Tuple[Any, float]] = {}
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    def get(self, key: str) -> Any | None:
        """Get value if exists and not expired."""
        if key in self._cache:
            value, expires_at = self._cache[key]
            if self._clock() < expires_at:
                return value
            # Expired, remove it
            del self._cache[key]
        return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Set value with an absolute expiry."""
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        self._cache[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    def ttl_remaining(self, key: str) -> Optional[float]:
        """Seconds until the entry expires, or None if absent/expired."""
        if self.get(key) is None:
            return None
        return self._cache[key][1] - self._clock()

    def keys(self) -> list[str]:
        now = self._clock()
        return [k for k, (_, exp) in self._cache.items() if now < exp]

    def clear(self) -> None:
        """Clear all cached values."""
        self._cache.clear()

    def __len__(self) -> int:
        return len(self.keys())


class MemoryCache:
    """Async CacheBackend over a TTLCache.

    Values are deep-copied on the way in and out so callers cannot mutate
    cached state by reference.
    """

    def __init__(self, ttl_cache: Optional[TTLCache] = None):
        self._store = ttl_cache or TTLCache()
        self.writes = 0

    async def get(self, key: str) -> Any:
        value = self._store.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            logger.debug(f"Refusing to cache {key} with non-positive ttl {ttl_seconds}")
            return
        self._store.set(key, copy.deepcopy(value), ttl_seconds)
        self.writes += 1

    async def delete(self, key: str) -> None:
        self._store.delete(key)

    def ttl_remaining(self, key: str) -> Optional[float]:
        return self._store.ttl_remaining(key)

    def keys(self) -> list[str]:
        return self._store.keys()

    def __len__(self) -> int:
        return len(self._store)

"""Cache module for resolved marking rules and per-exam rule sets."""

import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class TTLCache:
    """Bounded in-memory cache with time-based expiry.

    Entries are kept in insertion order. When the cache grows past
    ``max_size`` the oldest entries are dropped: ``evict_count`` of them,
    or the oldest half when ``evict_count`` is not given.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_size: int,
        evict_count: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.evict_count = evict_count
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, count=False) is not None

    # ============ READ / WRITE ============

    def get(self, key: Hashable, count: bool = True) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            if count:
                self.misses += 1
            return None

        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            self._entries.pop(key, None)
            if count:
                self.misses += 1
            return None

        if count:
            self.hits += 1
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries.pop(key, None)
        self._entries[key] = (self._clock(), value)
        if len(self._entries) > self.max_size:
            self._evict()

    def _evict(self) -> None:
        count = self.evict_count or len(self._entries) // 2
        for _ in range(min(count, len(self._entries))):
            self._entries.popitem(last=False)

    # ============ CLEANUP ============

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns number of removed entries."""
        now = self._clock()
        expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total * 100, 2) if total else 0.0,
        }

"""Shared TTL-based cache for payment processor lookups."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional


@dataclass
class CacheEntry:
    """Cache entry with TTL."""

    key: str
    value: Any
    fetched_at: datetime  # UTC
    ttl_seconds: int

    def is_expired(self) -> bool:
        """Check if cache entry has expired."""
        age_seconds = (datetime.now(timezone.utc) - self.fetched_at).total_seconds()
        return age_seconds >= self.ttl_seconds


class Cache:
    """In-memory TTL cache."""

    def __init__(self):
        self._store: dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss or expiry."""
        entry = self._store.get(key)
        if entry is None:
            return None

        if entry.is_expired():
            del self._store[key]
            return None

        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store a value for ttl_seconds."""
        self._store[key] = CacheEntry(
            key=key,
            value=value,
            fetched_at=datetime.now(timezone.utc),
            ttl_seconds=ttl_seconds,
        )

    def clear(self) -> None:
        """Clear all cache entries."""
        self._store.clear()


# Global cache instance
_cache: Optional[Cache] = None


def get_cache() -> Cache:
    """Get or create the singleton cache instance."""
    global _cache
    if _cache is None:
        _cache = Cache()
    return _cache

"""
TTL Cache

In-process cache with expiry and explicit invalidation, backed by
cachetools.TTLCache. Instances are created by the caller and injected into
the clients that need them; nothing here is module-level state.

Usage:
    from core.cache import TTLCache

    cache = TTLCache(ttl_seconds=300)
    cache.set("tenants:active", tenant_ids)
    cache.get("tenants:active")
    cache.invalidate("tenants:active")
"""

import logging
import time
from typing import Any, Callable, Optional

import cachetools

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    """Key/value cache where every entry expires ttl_seconds after it was set"""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
        max_entries: int = 10000,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        # Full cache drops expired entries first, then the least recently used
        self._entries = cachetools.TTLCache(
            maxsize=max_entries,
            ttl=ttl_seconds,
            timer=clock or time.monotonic,
        )

    def get(self, key: str, default: Any = None) -> Any:
        return self._entries.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = value

    def contains(self, key: str) -> bool:
        return key in self._entries

    def invalidate(self, key: str) -> bool:
        """Remove one entry. Returns True if it was live."""
        removed = self._entries.pop(key, _MISSING) is not _MISSING
        if removed:
            logger.debug(f"Cache entry invalidated: {key}")
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)


__all__ = ["TTLCache"]

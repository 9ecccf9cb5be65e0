"""
Ephemeral Cache: process-local TTL cache for order detail snapshots.

Never authoritative: every miss falls back to the store, and every status
change on an order drops all of that order's entries through
``invalidate_order`` rather than waiting for the TTL.

A reader that misses takes ``generation(order_id)`` before going to the
store and hands it back to ``set``; if the order was invalidated in between,
the snapshot it read is already stale and is not stored.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, NamedTuple, Optional, Set

from orderpay.core.logging import get_logger

logger = get_logger(__name__)


class OrderCacheKey(NamedTuple):
    """Order id plus the viewer scope ("admin" or the owner's user id)"""
    order_id: str
    scope: str


@dataclass
class _Entry:
    value: Any
    expires_at: float


class EphemeralCache:
    """TTL map with an order → keys index for write-through invalidation"""

    def __init__(
        self,
        default_ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, _Entry] = {}
        self._keys_by_order: Dict[str, Set[Hashable]] = {}
        self._generations: Dict[str, int] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self.delete(key)
            return None
        return entry.value

    def generation(self, order_id: str) -> int:
        return self._generations.get(order_id, 0)

    def set(
        self,
        key: Hashable,
        value: Any,
        ttl_seconds: Optional[float] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """Store ``value``; returns False when ``generation`` is out of date"""
        if (
            generation is not None
            and isinstance(key, OrderCacheKey)
            and generation != self.generation(key.order_id)
        ):
            return False
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl)
        if isinstance(key, OrderCacheKey):
            self._keys_by_order.setdefault(key.order_id, set()).add(key)
        return True

    def delete(self, key: Hashable) -> bool:
        existed = self._entries.pop(key, None) is not None
        if isinstance(key, OrderCacheKey):
            keys = self._keys_by_order.get(key.order_id)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._keys_by_order[key.order_id]
        return existed

    def invalidate_order(self, order_id: str) -> int:
        """Drop the cached copy of ``order_id`` for every viewer scope"""
        self._generations[order_id] = self.generation(order_id) + 1
        keys = self._keys_by_order.pop(order_id, set())
        removed = 0
        for key in keys:
            if self._entries.pop(key, None) is not None:
                removed += 1
        if removed:
            logger.debug(
                "Order cache invalidated",
                extra_data={"order_id": order_id, "entries": removed},
            )
        return removed

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            self.delete(key)
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._keys_by_order.clear()

    def __len__(self) -> int:
        return len(self._entries)


async def run_cache_sweeper(cache: EphemeralCache, interval_seconds: float) -> None:
    """Purge expired entries forever; started as a task at app startup"""
    while True:
        await asyncio.sleep(interval_seconds)
        purged = cache.purge_expired()
        if purged:
            logger.info(
                "Expired cache entries purged",
                extra_data={"purged": purged, "remaining": len(cache)},
            )

"""
Subtree Cache

Thread-safe LRU cache with TTL for assembled department subtrees. It sits
in front of the node store for reads; writers never fill it, they only
invalidate it.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

from orgtree.core.config import settings
from orgtree.schemas.department import DepartmentTreeNode

logger = logging.getLogger(__name__)

FOREST_KEY = "forest"


@dataclass
class CacheEntry:
    """Single cache entry with TTL tracking and the ids it covers."""
    data: Any
    node_ids: FrozenSet[int]
    created_at: float
    ttl_seconds: int
    hits: int = 0

    @property
    def is_expired(self) -> bool:
        return time.time() - self.created_at > self.ttl_seconds


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0


def subtree_key(root_id: int) -> str:
    return f"subtree:{root_id}"


class SubtreeCache:
    """
    LRU cache of assembled trees.

    Invalidating a node drops its own entry, every cached subtree that
    contains it (i.e. its ancestors' subtrees) and the forest entry.
    """

    def __init__(self, max_size: int = 500, default_ttl: int = 300):
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._stats = CacheStats()

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache, returns None if expired or missing."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats.misses += 1
                return None

            if entry.is_expired:
                del self._cache[key]
                self._stats.misses += 1
                return None

            self._cache.move_to_end(key)
            entry.hits += 1
            self._stats.hits += 1
            return _copy(entry.data)

    def set(self, key: str, value: Any, node_ids, ttl: Optional[int] = None) -> None:
        with self._lock:
            if key in self._cache:
                del self._cache[key]
            while len(self._cache) >= self._max_size:
                self._cache.popitem(last=False)
                self._stats.evictions += 1

            self._cache[key] = CacheEntry(
                data=_copy(value),
                node_ids=frozenset(node_ids),
                created_at=time.time(),
                ttl_seconds=ttl or self._default_ttl,
            )

    def invalidate_subtree(self, root_id: Optional[int]) -> None:
        with self._lock:
            stale = [FOREST_KEY] if FOREST_KEY in self._cache else []
            if root_id is not None:
                stale.extend(
                    key for key, entry in self._cache.items()
                    if key != FOREST_KEY and root_id in entry.node_ids
                )
            for key in stale:
                del self._cache[key]
            self._stats.invalidations += 1
        if stale:
            logger.debug(f"Invalidated {len(stale)} cached tree(s) covering department {root_id}")

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._cache

    @property
    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._stats.hits + self._stats.misses
            return {
                "hits": self._stats.hits,
                "misses": self._stats.misses,
                "evictions": self._stats.evictions,
                "invalidations": self._stats.invalidations,
                "size": len(self._cache),
                "max_size": self._max_size,
                "hit_rate": round(self._stats.hits / total, 4) if total else 0.0,
            }


def _copy(value: Any) -> Any:
    if isinstance(value, DepartmentTreeNode):
        return value.model_copy(deep=True)
    if isinstance(value, list):
        return [_copy(item) for item in value]
    return value


def create_cache() -> Optional[SubtreeCache]:
    """Build the subtree cache from settings, or None when caching is off."""
    if not settings.cache.enabled:
        return None
    return SubtreeCache(max_size=settings.cache.max_size, default_ttl=settings.cache.ttl_seconds)


_default_cache: Optional[SubtreeCache] = None
_default_cache_lock = threading.Lock()


def get_default_cache() -> Optional[SubtreeCache]:
    """
    Process-wide cache shared by services that are not handed one, so the
    writer invalidates what the readers fill. None when caching is off.
    """
    global _default_cache
    if not settings.cache.enabled:
        return None
    with _default_cache_lock:
        if _default_cache is None:
            _default_cache = create_cache()
        return _default_cache

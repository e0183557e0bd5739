"""
In-memory cache of parsed state files.

The store keys entries by the absolute path of the file they were read
from. Anything that writes one of those files, or learns from the watcher
that someone else did, calls ``invalidate`` with the path; registered hooks
hear about every invalidation whether or not the path was cached.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

InvalidationHook = Callable[[str], None]


@dataclass
class CachedState(Generic[T]):
    value: T
    expires_at: Optional[float] = None
    reads: int = 0

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class CacheCounters:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0

    @property
    def lookups(self) -> int:
        return self.hits + self.misses


class StateCache(Generic[T]):
    """
    Bounded cache of parsed state with per-entry expiry.

    The least recently read entry is dropped once ``max_size`` is exceeded.
    Entries written without a ``ttl`` use ``default_ttl``; a ``default_ttl``
    of None keeps them until they are evicted or invalidated.
    """

    def __init__(self, max_size: int = 256, default_ttl: Optional[float] = 30.0):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._entries: "OrderedDict[str, CachedState[T]]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._hooks: List[InvalidationHook] = []
        self.counters = CacheCounters()

    async def get(self, key: str) -> Optional[T]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expired(time.monotonic()):
                del self._entries[key]
                entry = None

            if entry is None:
                self.counters.misses += 1
                return None

            self._entries.move_to_end(key)
            entry.reads += 1
            self.counters.hits += 1
            return entry.value

    async def put(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        expires_at = None if lifetime is None else time.monotonic() + lifetime

        async with self._lock:
            self._entries[key] = CachedState(value=value, expires_at=expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self.counters.evictions += 1
                logger.debug(f"Evicted cached state for {evicted}")

    def add_invalidation_hook(self, hook: InvalidationHook) -> None:
        self._hooks.append(hook)

    def remove_invalidation_hook(self, hook: InvalidationHook) -> None:
        if hook in self._hooks:
            self._hooks.remove(hook)

    async def invalidate(self, key: str) -> bool:
        """
        Forget the state read from ``key`` and tell every hook.

        Returns:
            True if the key was cached
        """
        async with self._lock:
            removed = self._entries.pop(key, None) is not None
            self.counters.invalidations += 1

        # A failing hook must not stop the others from hearing about the write
        for hook in list(self._hooks):
            try:
                hook(key)
            except Exception as e:
                logger.warning(f"Invalidation hook {hook!r} failed for {key}: {e}")

        return removed

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def cleanup_expired(self) -> int:
        """Drop expired entries and return how many were removed"""
        now = time.monotonic()
        async with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in stale:
                del self._entries[key]

        if stale:
            logger.debug(f"Dropped {len(stale)} expired state entries")
        return len(stale)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.expired(time.monotonic())

    def get_stats(self) -> Dict[str, Any]:
        counters = self.counters
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": counters.hits,
            "misses": counters.misses,
            "hit_rate": counters.hits / counters.lookups if counters.lookups else 0.0,
            "evictions": counters.evictions,
            "invalidations": counters.invalidations,
            "hooks": len(self._hooks),
            "total_requests": counters.lookups,
        }

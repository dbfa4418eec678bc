"""
Time-to-live caches for Yodeck structures.

Entries expire a fixed interval after insertion; reads never extend an
entry's lifetime. Writers must invalidate AFTER the remote mutation has
succeeded (write-then-invalidate), so that the next read cannot observe a
value fetched before the mutation.
"""

import time
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")

MEDIA_INDEX_KEY = "all"


class TTLCache(Generic[V]):
    """Fixed-TTL key/value cache.

    Args:
        ttl_seconds: Lifetime of an entry measured from ``set()``.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self, ttl_seconds: float = 600.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, V]] = {}

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: V) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def delete(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for expires_at, _ in self._entries.values() if now < expires_at)


class CacheSet:
    """The five per-entity caches held by a ``YodeckClient``.

    Media is cached as one full id index under ``MEDIA_INDEX_KEY`` because
    tag-based resolution scans media by tag rather than by id.
    """

    def __init__(
        self, ttl_seconds: float = 600.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.playlists: TTLCache[Any] = TTLCache(ttl_seconds, clock)
        self.layouts: TTLCache[Any] = TTLCache(ttl_seconds, clock)
        self.schedules: TTLCache[Any] = TTLCache(ttl_seconds, clock)
        self.tagbased: TTLCache[Any] = TTLCache(ttl_seconds, clock)
        self.media_index: TTLCache[Any] = TTLCache(ttl_seconds, clock)

    def all(self):
        return (
            self.playlists,
            self.layouts,
            self.schedules,
            self.tagbased,
            self.media_index,
        )

    def clear(self) -> None:
        for cache in self.all():
            cache.clear()


__all__ = ["TTLCache", "CacheSet", "MEDIA_INDEX_KEY"]

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock

from .models import RestrictionSet
from .settings import settings


def cache_key(route_id: str, profile_fingerprint: str) -> str:
    return f"{route_id}:{profile_fingerprint}"


@dataclass
class _RestrictionCacheEntry:
    inserted_at: float
    payload: RestrictionSet


class RestrictionCacheStore:
    # RestrictionSet is frozen, so entries are shared rather than deep-copied.

    def __init__(self, *, ttl_s: int, max_entries: int) -> None:
        self._ttl_s = max(1, int(ttl_s))
        self._max_entries = max(1, int(max_entries))
        self._lock = Lock()
        self._items: OrderedDict[str, _RestrictionCacheEntry] = OrderedDict()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _is_expired(self, entry: _RestrictionCacheEntry) -> bool:
        return (time.time() - entry.inserted_at) > self._ttl_s

    def get(self, key: str) -> RestrictionSet | None:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                self._misses += 1
                return None

            if self._is_expired(entry):
                self._items.pop(key, None)
                self._misses += 1
                return None

            self._items.move_to_end(key)
            self._hits += 1
            return entry.payload

    def set(self, key: str, value: RestrictionSet) -> None:
        with self._lock:
            if key in self._items:
                self._items.move_to_end(key)
            self._items[key] = _RestrictionCacheEntry(inserted_at=time.time(), payload=value)

            while len(self._items) > self._max_entries:
                self._items.popitem(last=False)
                self._evictions += 1

    def invalidate_route(self, route_id: str) -> int:
        prefix = f"{route_id}:"
        with self._lock:
            stale = [key for key in self._items if key.startswith(prefix)]
            for key in stale:
                del self._items[key]
            return len(stale)

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._items),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "ttl_s": self._ttl_s,
                "max_entries": self._max_entries,
            }


RESTRICTION_CACHE = RestrictionCacheStore(
    ttl_s=settings.restriction_cache_ttl_s,
    max_entries=settings.restriction_cache_max_entries,
)


def clear_restriction_cache() -> int:
    return RESTRICTION_CACHE.clear()


def restriction_cache_stats() -> dict[str, int]:
    return RESTRICTION_CACHE.snapshot()

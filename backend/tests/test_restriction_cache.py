from __future__ import annotations

import time

from truckroute.models import RestrictionSet
from truckroute.restriction_cache import RestrictionCacheStore, cache_key


def _set(route_id: str) -> RestrictionSet:
    return RestrictionSet(route_id=route_id, profile_fingerprint="fp")


def test_hits_misses_and_keying() -> None:
    cache = RestrictionCacheStore(ttl_s=60, max_entries=4)
    key = cache_key("route-1", "fp")

    assert cache.get(key) is None
    cache.set(key, _set("route-1"))
    assert cache.get(key) is not None
    assert cache.get(cache_key("route-1", "other-fp")) is None

    stats = cache.snapshot()
    assert stats["hits"] == 1
    assert stats["misses"] == 2
    assert stats["size"] == 1


def test_lru_eviction() -> None:
    cache = RestrictionCacheStore(ttl_s=60, max_entries=2)
    cache.set("a", _set("a"))
    cache.set("b", _set("b"))
    cache.get("a")
    cache.set("c", _set("c"))

    assert cache.get("b") is None
    assert cache.get("a") is not None
    assert cache.snapshot()["evictions"] == 1


def test_ttl_expiry() -> None:
    cache = RestrictionCacheStore(ttl_s=60, max_entries=2)
    cache.set("a", _set("a"))
    cache._ttl_s = 0
    time.sleep(0.02)
    assert cache.get("a") is None
    assert cache.snapshot()["size"] == 0


def test_invalidate_route_and_clear() -> None:
    cache = RestrictionCacheStore(ttl_s=60, max_entries=8)
    cache.set(cache_key("r1", "fp1"), _set("r1"))
    cache.set(cache_key("r1", "fp2"), _set("r1"))
    cache.set(cache_key("r2", "fp1"), _set("r2"))

    assert cache.invalidate_route("r1") == 2
    assert cache.clear() == 1
    assert cache.snapshot()["size"] == 0

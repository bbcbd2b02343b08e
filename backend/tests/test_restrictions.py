from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest

from truckroute.errors import NetworkError, RestrictionQueryFailed
from truckroute.geo import distance_m
from truckroute.models import Restriction, RouteResult, VehicleProfile
from truckroute.restriction_cache import RestrictionCacheStore
from truckroute.restrictions import (
    OverpassClient,
    RestrictionQueryService,
    build_overpass_query,
    deduplicate,
    parse_elements,
)


def _route_points(n: int = 60) -> list[tuple[float, float]]:
    # ~111 m between vertices heading north.
    return [(52.0 + i * 0.001, -1.5) for i in range(n)]


def _route() -> RouteResult:
    return RouteResult(coordinates=tuple(_route_points()), distance_m=6_500.0, duration_s=400.0, provider="tomtom")


def _way(way_id: int, lat: float, lon: float, tags: dict[str, str]) -> dict[str, Any]:
    return {
        "type": "way",
        "id": way_id,
        "tags": tags,
        "geometry": [{"lat": lat, "lon": lon - 0.0002}, {"lat": lat, "lon": lon + 0.0002}],
    }


def _restriction(rid: str, *, limit: float, lat: float, road_id: str | None = "way/1", confidence: float = 1.0) -> Restriction:
    return Restriction(
        restriction_id=rid,
        type="maxheight",
        limit=limit,
        road_id=road_id,
        location=(lat, -1.5),
        confidence=confidence,
        route_offset_m=(lat - 52.0) * 111_000,
    )


class FakeSource:
    name = "fake_overpass"

    def __init__(self, elements: list[dict[str, Any]] | None = None, error: Exception | None = None) -> None:
        self.elements = elements or []
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def fetch_elements(self, points, *, radius_m: int, timeout_s: float) -> list[dict[str, Any]]:
        self.calls.append({"points": list(points), "radius_m": radius_m, "timeout_s": timeout_s})
        if self.error is not None:
            raise self.error
        return self.elements


def test_overpass_query_covers_every_tag_per_point() -> None:
    ql = build_overpass_query([(52.0, -1.5), (52.1, -1.4)], radius_m=100, timeout_s=25)
    assert ql.startswith("[out:json][timeout:25];")
    assert ql.rstrip().endswith("out body geom;")
    assert ql.count("way(around:100,") == 8
    assert '["maxheight"]' in ql
    assert '["maxweight"]' in ql


def test_parse_normalises_units_and_records_route_offset() -> None:
    points = _route_points()
    elements = [
        _way(10, 52.010, -1.5, {"maxheight": "13'6\"", "name": "Rail Bridge"}),
        _way(11, 52.020, -1.5, {"maxweight": "10 t", "maxwidth": "2.3"}),
        _way(12, 52.030, -1.5, {"maxheight": "default"}),
    ]

    parsed = parse_elements(elements, points, tolerance_m=200)
    by_id = {r.restriction_id: r for r in parsed}

    height = by_id["osm:way/10:maxheight"]
    assert height.limit == pytest.approx(4.1148, abs=1e-4)
    assert height.road_name == "Rail Bridge"
    assert height.route_offset_m == pytest.approx(10 * 111.19, abs=2.0)
    assert height.confidence == 1.0

    assert by_id["osm:way/11:maxweight"].limit == pytest.approx(10.0)
    width = by_id["osm:way/11:maxwidth"]
    assert width.limit == pytest.approx(2.3)
    assert width.confidence < 1.0

    assert "osm:way/12:maxheight" not in by_id


def test_parse_drops_elements_far_from_route() -> None:
    far = _way(20, 52.010, -1.48, {"maxheight": "3.0"})  # ~1.4 km east
    assert parse_elements([far], _route_points(), tolerance_m=200) == []


def test_parse_keeps_bridge_midway_along_a_long_segment() -> None:
    # Two vertices 3.3 km apart; the bridge sits on the road 1.9 km in.
    points = [(52.0, -1.5), (52.03, -1.5)]
    bridge = _way(30, 52.017, -1.5, {"maxheight": "4.0"})

    parsed = parse_elements([bridge], points, tolerance_m=200)

    assert [r.restriction_id for r in parsed] == ["osm:way/30:maxheight"]
    assert parsed[0].route_offset_m == pytest.approx(0.017 / 0.03 * distance_m(*points), abs=2.0)


def test_dedup_keeps_most_restrictive_value() -> None:
    a = _restriction("osm:way/1:maxheight", limit=4.0, lat=52.0100, confidence=0.9)
    b = _restriction("osm:way/1:maxheight#2", limit=3.9, lat=52.0101, confidence=1.0)

    merged = deduplicate([a, b], dedup_distance_m=25)

    assert len(merged) == 1
    assert merged[0].limit == pytest.approx(3.9)
    assert merged[0].confidence == 1.0


def test_dedup_keeps_distinct_roads_and_distant_locations() -> None:
    a = _restriction("a", limit=4.0, lat=52.0100)
    other_road = _restriction("b", limit=3.9, lat=52.0100, road_id="way/2")
    far_away = _restriction("c", limit=3.8, lat=52.0200)

    merged = deduplicate([far_away, a, other_road], dedup_distance_m=25)

    assert {r.restriction_id for r in merged} == {"a", "b", "c"}
    assert [r.restriction_id for r in merged][-1] == "c"


def test_service_samples_route_and_caches_per_profile() -> None:
    source = FakeSource([_way(10, 52.010, -1.5, {"maxheight": "4.0"})])
    cache = RestrictionCacheStore(ttl_s=60, max_entries=8)
    service = RestrictionQueryService(source, cache=cache, timeout_s=5)
    route = _route()
    profile = VehicleProfile()

    first = asyncio.run(service.load_restrictions(route, profile))
    second = asyncio.run(service.load_restrictions(route, profile))

    assert len(source.calls) == 1
    assert second is first
    assert first.route_id == route.route_id
    assert first.profile_fingerprint == profile.fingerprint()
    assert len(first.restrictions) == 1
    assert first.routing_only is False
    # ~6.5 km at 500 m spacing: a sample roughly every 5 vertices plus the endpoints.
    assert 12 <= len(source.calls[0]["points"]) <= 15
    assert cache.snapshot()["hits"] == 1

    asyncio.run(service.load_restrictions(route, profile.model_copy(update={"height_m": 3.5})))
    assert len(source.calls) == 2


def test_service_failure_degrades_to_routing_only() -> None:
    source = FakeSource(error=NetworkError("overpass down", provider="overpass"))
    cache = RestrictionCacheStore(ttl_s=60, max_entries=8)
    service = RestrictionQueryService(source, cache=cache, timeout_s=5)

    result = asyncio.run(service.load_restrictions(_route(), VehicleProfile()))

    assert result.routing_only is True
    assert result.restrictions == ()
    assert result.error
    assert cache.snapshot()["size"] == 0


def test_nearby_lookup_orders_by_distance_and_propagates_failures() -> None:
    source = FakeSource(
        [
            _way(1, 52.0050, -1.5, {"maxheight": "4.2"}),
            _way(2, 52.0010, -1.5, {"maxweight": "7.5"}),
        ]
    )
    service = RestrictionQueryService(source, cache=RestrictionCacheStore(ttl_s=60, max_entries=8), timeout_s=5)

    nearby = asyncio.run(service.load_restrictions_nearby((52.0, -1.5), radius_m=1000))
    assert [r.road_id for r in nearby] == ["way/2", "way/1"]
    assert source.calls[0]["radius_m"] == 1000

    failing = RestrictionQueryService(FakeSource(error=NetworkError("x", provider="overpass")), timeout_s=5)
    with pytest.raises(RestrictionQueryFailed):
        asyncio.run(failing.load_restrictions_nearby((52.0, -1.5)))


def test_overpass_client_posts_query() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"elements": [_way(1, 52.0, -1.5, {"maxheight": "4.0"})]})

    client = OverpassClient(
        "https://overpass.test/api/interpreter",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    elements = asyncio.run(client.fetch_elements([(52.0, -1.5)], radius_m=100, timeout_s=5))

    assert seen["method"] == "POST"
    assert "out body geom;" in seen["form"]["data"][0]
    assert elements[0]["id"] == 1

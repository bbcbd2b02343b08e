from __future__ import annotations

import asyncio
from typing import Any

import pytest

from truckroute.errors import NetworkError, ProviderExhausted, SessionNotFound
from truckroute.map_matching import RouteGeometryAdapter
from truckroute.models import (
    LatLng,
    PositionFix,
    RouteRequest,
    RouteResult,
    SessionEventPayload,
    VehicleProfile,
)
from truckroute.restriction_cache import RestrictionCacheStore, cache_key
from truckroute.restrictions import RestrictionQueryService
from truckroute.route_coordinator import RouteRequestCoordinator
from truckroute.session import NavigationSession, SessionEvents, SessionRegistry
from truckroute.slots import Superseded
from truckroute.traffic_flow import RawFlow, TrafficFlowClassifier

STEP_DEG = 0.001


def _coords(lon: float = -1.5, n: int = 60) -> tuple[tuple[float, float], ...]:
    return tuple((52.0 + i * STEP_DEG, lon) for i in range(n))


def _at(vertex: int, lon: float = -1.5) -> PositionFix:
    return PositionFix(lat=52.0 + vertex * STEP_DEG, lon=lon)


def _request() -> RouteRequest:
    return RouteRequest(origin=LatLng(lat=52.0, lon=-1.5), destination=LatLng(lat=52.059, lon=-1.5))


class FakeRouter:
    name = "tomtom"

    def __init__(self) -> None:
        self.calls = 0

    async def fetch_route(self, request: RouteRequest, *, timeout_s: float) -> RouteResult:
        self.calls += 1
        return RouteResult(coordinates=_coords(), distance_m=6_500.0, duration_s=420.0, provider=self.name)


class FakeMatcher:
    name = "mapbox"

    async def match(self, coordinates, *, timeout_s: float) -> list[dict[str, Any]]:
        return [{"geometry": {"coordinates": [[lon, lat] for lat, lon in coordinates]}, "legs": []}]


class FakeSource:
    """Returns a 4.0 m bridge at vertex 10 of whichever route is queried."""

    name = "overpass"

    def __init__(self) -> None:
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def fetch_elements(self, points, *, radius_m: int, timeout_s: float) -> list[dict[str, Any]]:
        self.calls += 1
        if self.gate is not None and self.calls == 1:
            await self.gate.wait()
        lat, lon = points[0]
        return [
            {
                "type": "way",
                "id": 100 + self.calls,
                "tags": {"maxheight": "4.0", "name": "Canal Bridge"},
                "geometry": [{"lat": lat + 10 * STEP_DEG, "lon": lon}],
            }
        ]


class FakeFlow:
    name = "tomtom_flow"

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    async def fetch_flow(self, coordinate, *, timeout_s: float) -> RawFlow:
        if self.error is not None:
            raise self.error
        return RawFlow(provider=self.name, current_speed_kmh=30, free_flow_speed_kmh=60)


def _session(source: FakeSource | None = None, *, profile: VehicleProfile | None = None) -> NavigationSession:
    return NavigationSession(
        coordinator=RouteRequestCoordinator(FakeRouter(), timeout_s=1),
        adapter=RouteGeometryAdapter(FakeMatcher(), timeout_s=1),
        restriction_service=RestrictionQueryService(
            source or FakeSource(),
            cache=RestrictionCacheStore(ttl_s=60, max_entries=8),
            timeout_s=1,
        ),
        profile=profile or VehicleProfile(height_m=4.11),
    )


async def _next(queue: asyncio.Queue, kind: str) -> SessionEventPayload:
    while True:
        event = await asyncio.wait_for(queue.get(), timeout=2)
        assert event is not None, f"stream ended before {kind}"
        if event.kind == kind:
            return event


def test_activation_raises_advisory_for_tall_vehicle() -> None:
    async def scenario() -> tuple[NavigationSession, SessionEventPayload]:
        session = _session()
        queue = session.events.subscribe()
        session.update_position(_at(0))
        guidance = await session.compute_and_activate(_request())
        assert guidance.degraded is False
        await _next(queue, "route_activated")
        raised = await _next(queue, "advisory_raised")
        await session.close()
        return session, raised

    session, raised = asyncio.run(scenario())
    assert raised.advisory is not None
    assert raised.advisory.exceedance == pytest.approx(0.21)
    assert raised.advisory.restriction.road_name == "Canal Bridge"
    assert session.restrictions is not None
    assert session.restrictions.route_id == session.route.route_id


def test_route_replacement_cancels_stale_restriction_load() -> None:
    async def scenario() -> tuple[object, NavigationSession, RouteResult]:
        source = FakeSource()
        source.gate = asyncio.Event()
        session = _session(source)
        route_a = RouteResult(coordinates=_coords(-1.5), distance_m=6_500.0, duration_s=420.0, provider="tomtom")
        route_b = RouteResult(coordinates=_coords(-1.6), distance_m=6_500.0, duration_s=420.0, provider="tomtom")

        async def activate_a() -> object:
            try:
                return await session.activate_route(route_a)
            except Superseded as e:
                return e

        first = asyncio.create_task(activate_a())
        while source.calls < 1:
            await asyncio.sleep(0)
        await session.activate_route(route_b)
        outcome = await first
        await session.close()
        return outcome, session, route_b

    outcome, session, route_b = asyncio.run(scenario())
    assert isinstance(outcome, Superseded)
    assert session.route == route_b
    assert session.restrictions is not None
    assert session.restrictions.route_id == route_b.route_id


def test_replacing_a_route_drops_its_cached_restrictions() -> None:
    async def scenario() -> tuple[RestrictionCacheStore, RouteResult, RouteResult]:
        session = _session()
        route_a = RouteResult(coordinates=_coords(-1.5), distance_m=6_500.0, duration_s=420.0, provider="tomtom")
        route_b = RouteResult(coordinates=_coords(-1.6), distance_m=6_500.0, duration_s=420.0, provider="tomtom")
        await session.activate_route(route_a)
        await session.activate_route(route_b)
        await session.close()
        return session.restriction_service.cache, route_a, route_b

    cache, route_a, route_b = asyncio.run(scenario())
    fingerprint = VehicleProfile(height_m=4.11).fingerprint()
    assert cache.get(cache_key(route_a.route_id, fingerprint)) is None
    assert cache.get(cache_key(route_b.route_id, fingerprint)) is not None

def test_profile_change_clears_advisory_and_reloads_restrictions() -> None:
    async def scenario() -> tuple[NavigationSession, FakeSource, list[str]]:
        source = FakeSource()
        session = _session(source)
        queue = session.events.subscribe()
        session.update_position(_at(0))
        await session.compute_and_activate(_request())
        await _next(queue, "advisory_raised")

        await session.update_profile(VehicleProfile(height_m=3.5))
        cleared = await _next(queue, "advisory_cleared")
        await asyncio.sleep(0.05)
        await session.close()
        kinds = []
        while not queue.empty():
            item = queue.get_nowait()
            if item is not None:
                kinds.append(item.kind)
        assert cleared.advisory is not None
        return session, source, kinds

    session, source, remaining = asyncio.run(scenario())
    assert session.advisory is None
    assert source.calls == 2
    assert session.restrictions is not None
    assert session.restrictions.profile_fingerprint == VehicleProfile(height_m=3.5).fingerprint()
    assert "advisory_raised" not in remaining


def test_profile_change_during_restriction_load_applies_new_profile() -> None:
    async def scenario() -> tuple[NavigationSession, FakeSource, float]:
        source = FakeSource()
        source.gate = asyncio.Event()
        session = _session(source)
        session.update_position(_at(0))
        activation = asyncio.create_task(session.compute_and_activate(_request()))
        while source.calls == 0:
            await asyncio.sleep(0.005)

        await session.update_profile(VehicleProfile(height_m=3.5))
        source.gate.set()
        await activation
        await asyncio.sleep(0.05)
        snapshot = session.monitor_snapshot()
        assert snapshot is not None
        await session.close()
        return session, source, snapshot.profile.height_m

    session, source, snapshot_height = asyncio.run(scenario())
    assert snapshot_height == 3.5
    assert source.calls == 2
    assert session.profile.height_m == 3.5
    assert session.restrictions is not None
    assert session.restrictions.profile_fingerprint == VehicleProfile(height_m=3.5).fingerprint()
    assert session.advisory is None


def test_dismissed_advisory_is_not_raised_again() -> None:
    async def scenario() -> tuple[bool, NavigationSession, list[str]]:
        session = _session()
        queue = session.events.subscribe()
        session.update_position(_at(0))
        await session.compute_and_activate(_request())
        await _next(queue, "advisory_raised")

        dismissed = session.dismiss()
        await _next(queue, "advisory_cleared")
        session.update_position(_at(2))
        session.monitor.request_evaluation()
        await asyncio.sleep(0.05)
        await session.close()
        kinds = []
        while not queue.empty():
            item = queue.get_nowait()
            if item is not None:
                kinds.append(item.kind)
        return dismissed, session, kinds

    dismissed, session, kinds = asyncio.run(scenario())
    assert dismissed is True
    assert session.advisory is None
    assert "advisory_raised" not in kinds


def test_close_stops_background_work_and_ends_streams() -> None:
    async def scenario() -> tuple[NavigationSession, list[str]]:
        session = _session()
        session.traffic = TrafficFlowClassifier(FakeFlow(), timeout_s=1)
        seen: list[str] = []

        async def consume() -> None:
            async for event in session.events.stream():
                seen.append(event.kind)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        session.update_position(_at(0))
        await session.compute_and_activate(_request())
        assert session.monitor.running
        assert session.refresher.running
        await session.close()
        await asyncio.wait_for(consumer, timeout=2)
        return session, seen

    session, seen = asyncio.run(scenario())
    assert seen[0] == "route_activated"
    assert seen[-1] == "session_closed"
    assert session.monitor.running is False
    assert session.refresher.running is False
    assert all(not slot.busy for slot in session.slots.values())
    with pytest.raises(SessionNotFound):
        session.update_position(_at(1))


def test_traffic_refresh_keeps_previous_sample_on_failure() -> None:
    async def scenario() -> NavigationSession:
        session = _session()
        session.traffic = TrafficFlowClassifier(FakeFlow(), timeout_s=1)
        session.update_position(_at(0))
        sample = await session.refresh_traffic()
        assert sample is not None and sample.level == 1

        session.traffic = TrafficFlowClassifier(FakeFlow(NetworkError("down", provider="tomtom_flow")), timeout_s=1)
        with pytest.raises(ProviderExhausted):
            await session.refresh_traffic()
        await session.close()
        return session

    session = asyncio.run(scenario())
    assert session.congestion is not None
    assert session.congestion.level == 1


def test_events_fan_out_and_drop_oldest_for_slow_consumers() -> None:
    async def scenario() -> tuple[list[str], int]:
        events = SessionEvents("s1", max_queue=2)
        fast = events.subscribe()
        for kind in ("route_activated", "advisory_raised", "advisory_cleared"):
            events.publish(SessionEventPayload(session_id="s1", kind=kind))
        kinds = [fast.get_nowait().kind for _ in range(2)]
        events.close()
        late = events.subscribe()
        return kinds, late.qsize()

    kinds, late_size = asyncio.run(scenario())
    assert kinds == ["advisory_raised", "advisory_cleared"]
    assert late_size == 1


def test_registry_lookup_and_close() -> None:
    async def scenario() -> None:
        registry = SessionRegistry(
            coordinator=RouteRequestCoordinator(FakeRouter(), timeout_s=1),
            adapter=RouteGeometryAdapter(FakeMatcher(), timeout_s=1),
            restriction_service=RestrictionQueryService(FakeSource(), timeout_s=1),
        )
        session = registry.create(VehicleProfile())
        assert registry.get(session.session_id) is session
        await registry.close(session.session_id)
        assert session.closed
        with pytest.raises(SessionNotFound):
            registry.get(session.session_id)
        with pytest.raises(SessionNotFound):
            await registry.close(session.session_id)

    asyncio.run(scenario())

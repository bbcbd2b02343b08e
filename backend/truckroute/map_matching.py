"""Route geometry adaptation: decimate raw geometry and snap it with Mapbox Map Matching."""

from __future__ import annotations

import asyncio
import math
from collections.abc import Sequence
from typing import Any, Protocol, TypeVar

import httpx
from pydantic import ValidationError

from .errors import (
    DecodeError,
    InsufficientGeometry,
    MapMatchingFailed,
    NetworkError,
    NoMatchings,
    ProviderHTTPError,
    ProviderNotConfigured,
    TruckRouteError,
)
from .logging_utils import log_event
from .metrics_store import incr
from .models import Coordinate, GuidancePath, Maneuver, MatchedPath, RouteResult
from .provider_http import new_async_client, request_json
from .settings import settings

PROVIDER_ID = "mapbox"

T = TypeVar("T")


def decimate(points: Sequence[T], cap: int) -> list[T]:
    """Evenly spaced (by index) subset of at most ``cap`` points.

    step = (n-1)/(cap-1); output i takes input round(i*step), clamped to n-1,
    so the first and last points always survive.
    """
    if cap < 2:
        raise ValueError("cap must be >= 2")
    n = len(points)
    if n <= cap:
        return list(points)
    step = (n - 1) / (cap - 1)
    # Half-up rounding; Python's round() is banker's rounding.
    return [points[min(int(math.floor(i * step + 0.5)), n - 1)] for i in range(cap)]


def _drop_repeats(points: Sequence[Coordinate]) -> list[Coordinate]:
    out: list[Coordinate] = []
    for pt in points:
        if not out or out[-1] != pt:
            out.append(pt)
    return out


class MapMatcher(Protocol):
    name: str

    async def match(self, coordinates: Sequence[Coordinate], *, timeout_s: float) -> list[dict[str, Any]]: ...


class MapboxMatchingClient:
    name = PROVIDER_ID

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str,
        profile: str = "driving-traffic",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.profile = profile
        self._client = client or new_async_client()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def match(self, coordinates: Sequence[Coordinate], *, timeout_s: float) -> list[dict[str, Any]]:
        if not self.access_token:
            raise ProviderNotConfigured("Mapbox access token is not configured", provider=PROVIDER_ID)

        coords = ";".join(f"{lon},{lat}" for lat, lon in coordinates)
        url = f"{self.base_url}/{self.profile}/{coords}"
        params = {
            "access_token": self.access_token,
            "geometries": "geojson",
            "overview": "full",
            "steps": "true",
            "voice_instructions": "true",
            "banner_instructions": "true",
            "tidy": "true",
        }
        data = await request_json(
            self._client,
            "GET",
            url,
            provider=PROVIDER_ID,
            timeout_s=timeout_s,
            params=params,
            # NoMatch and friends come back as 422 with a JSON body.
            allow_statuses=frozenset({422}),
        )
        if not isinstance(data, dict):
            raise DecodeError("Map matching payload is not an object", provider=PROVIDER_ID)

        code = data.get("code")
        matchings = data.get("matchings")
        if code == "NoMatch" or (code == "Ok" and not matchings):
            raise NoMatchings("Map matching returned no matchings", provider=PROVIDER_ID)
        if code != "Ok":
            raise ProviderHTTPError(
                f"Map matching error code={code} message={data.get('message')}",
                provider=PROVIDER_ID,
            )
        if not isinstance(matchings, list):
            raise DecodeError("Map matching payload missing matchings", provider=PROVIDER_ID)
        return matchings


def _lonlat(value: Any) -> Coordinate | None:
    if isinstance(value, (list, tuple)) and len(value) >= 2:
        return (float(value[1]), float(value[0]))
    return None


def parse_matching(matching: dict[str, Any], *, source_route_id: str, provider: str = PROVIDER_ID) -> MatchedPath:
    try:
        geometry = matching["geometry"]
        coords = [c for c in (_lonlat(pt) for pt in geometry["coordinates"]) if c is not None]
        maneuvers: list[Maneuver] = []
        for leg in matching.get("legs") or []:
            for step in leg.get("steps") or []:
                man = step.get("maneuver") or {}
                maneuvers.append(
                    Maneuver(
                        type=str(man.get("type", "unknown")),
                        modifier=man.get("modifier"),
                        instruction=str(man.get("instruction") or ""),
                        location=_lonlat(man.get("location")),
                        distance_m=float(step.get("distance", 0.0)),
                        duration_s=float(step.get("duration", 0.0)),
                        road_name=step.get("name") or None,
                    )
                )
        confidence = matching.get("confidence")
        return MatchedPath(
            coordinates=tuple(coords),
            maneuvers=tuple(maneuvers),
            confidence=float(confidence) if confidence is not None else None,
            distance_m=float(matching.get("distance", 0.0)),
            duration_s=float(matching.get("duration", 0.0)),
            source_route_id=source_route_id,
            provider=provider,
        )
    except (KeyError, TypeError, ValueError, ValidationError) as e:
        raise DecodeError(f"Map matching candidate malformed: {e!r}", provider=provider) from e


class RouteGeometryAdapter:
    def __init__(
        self,
        matcher: MapMatcher,
        *,
        max_coordinates: int | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.matcher = matcher
        self.max_coordinates = int(max_coordinates or settings.matching_max_coordinates)
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.matching_timeout_s)

    async def adapt(self, route: RouteResult) -> MatchedPath:
        points = decimate(_drop_repeats(route.coordinates), self.max_coordinates)
        if len(points) < 2:
            raise InsufficientGeometry(
                f"Need at least 2 distinct coordinates for map matching, got {len(points)}",
                provider=self.matcher.name,
            )

        try:
            matchings = await asyncio.wait_for(
                self.matcher.match(points, timeout_s=self.timeout_s),
                timeout=self.timeout_s,
            )
        except TimeoutError as e:
            raise NetworkError(
                f"{self.matcher.name} did not answer within {self.timeout_s:.1f}s",
                provider=self.matcher.name,
            ) from e

        if not matchings:
            raise NoMatchings("Map matching returned no matchings", provider=self.matcher.name)
        # First candidate is the provider's preferred matching.
        path = parse_matching(matchings[0], source_route_id=route.route_id, provider=self.matcher.name)
        if len(path.coordinates) < 2:
            raise DecodeError("Matched geometry has fewer than 2 points", provider=self.matcher.name)

        log_event(
            "route_matched",
            route_id=route.route_id,
            raw_points=len(route.coordinates),
            submitted_points=len(points),
            matched_points=len(path.coordinates),
            maneuver_count=len(path.maneuvers),
            confidence=path.confidence,
        )
        return path

    async def adapt_or_degrade(self, route: RouteResult) -> GuidancePath:
        """Matched path when possible, otherwise the raw geometry without turn-by-turn data."""
        try:
            matched = await self.adapt(route)
        except TruckRouteError as e:
            failure = MapMatchingFailed(
                f"Map matching unavailable, showing raw route geometry ({e.reason_code})",
                provider=e.provider,
                details={"cause": e.reason_code},
            )
            incr("degraded_raw_geometry")
            log_event(
                "map_matching_failed",
                route_id=route.route_id,
                reason_code=failure.reason_code,
                cause=e.reason_code,
                error=str(e),
            )
            return GuidancePath(
                route_id=route.route_id,
                coordinates=route.coordinates,
                matched=None,
                degraded=True,
                warning=failure.message,
            )
        return GuidancePath(route_id=route.route_id, coordinates=matched.coordinates, matched=matched)

# backend/truckroute/routing_osrm.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Final
from urllib.parse import urlparse

import httpx

from .errors import DecodeError, NetworkError, NoRouteFound, ProviderHTTPError
from .models import Coordinate, RouteLeg, RoutePreferences, RouteRequest, RouteResult
from .provider_http import new_async_client, request_json

PROVIDER_ID = "osrm"

_LOCALHOST_HOSTS: Final[set[str]] = {"localhost", "127.0.0.1"}
_NO_ROUTE_CODES: Final[set[str]] = {"NoRoute", "NoSegment"}


def _running_in_docker() -> bool:
    # Best-effort detection; used only for better defaults / hints.
    return Path("/.dockerenv").exists() or os.environ.get("RUNNING_IN_DOCKER") == "1"


def exclude_classes(preferences: RoutePreferences) -> str | None:
    """Comma-separated OSRM excludable classes. Depends on the profile supporting them."""
    classes: list[str] = []
    if preferences.avoid_tolls:
        classes.append("toll")
    if preferences.avoid_motorways:
        classes.append("motorway")
    if preferences.avoid_ferries:
        classes.append("ferry")
    return ",".join(classes) if classes else None


def validate_osrm_geometry(route: dict[str, Any]) -> list[Coordinate]:
    """GeoJSON [lon, lat] pairs -> (lat, lon) tuples."""
    geom = route.get("geometry")
    if not isinstance(geom, dict):
        raise DecodeError("OSRM route missing geometry", provider=PROVIDER_ID)

    coords = geom.get("coordinates")
    if not isinstance(coords, list) or len(coords) < 2:
        raise DecodeError("OSRM geometry missing coordinates", provider=PROVIDER_ID)

    out: list[Coordinate] = []
    for pt in coords:
        if (
            isinstance(pt, (list, tuple))
            and len(pt) >= 2
            and isinstance(pt[0], (int, float))
            and isinstance(pt[1], (int, float))
        ):
            out.append((float(pt[1]), float(pt[0])))
    if len(out) < 2:
        raise DecodeError("OSRM geometry invalid", provider=PROVIDER_ID)
    return out


def parse_osrm_route(data: Any) -> RouteResult:
    if not isinstance(data, dict):
        raise DecodeError("OSRM payload is not an object", provider=PROVIDER_ID)

    code = data.get("code")
    if code in _NO_ROUTE_CODES:
        raise NoRouteFound(f"OSRM {code}: {data.get('message') or 'no route'}", provider=PROVIDER_ID)
    if code != "Ok":
        raise ProviderHTTPError(
            f"OSRM error code={code} message={data.get('message')}",
            provider=PROVIDER_ID,
        )

    routes = data.get("routes", [])
    if not isinstance(routes, list) or not routes:
        raise NoRouteFound("OSRM returned no routes", provider=PROVIDER_ID)

    route = routes[0]
    coords = validate_osrm_geometry(route)
    legs: list[RouteLeg] = []
    for leg in route.get("legs") or []:
        if not isinstance(leg, dict):
            continue
        legs.append(
            RouteLeg(
                distance_m=float(leg.get("distance", 0.0)),
                duration_s=float(leg.get("duration", 0.0)),
                summary=leg.get("summary") or None,
            )
        )

    try:
        distance_m = float(route.get("distance", 0.0))
        duration_s = float(route.get("duration", 0.0))
    except (TypeError, ValueError) as e:
        raise DecodeError("OSRM route distance/duration malformed", provider=PROVIDER_ID) from e

    if (distance_m <= 0 or duration_s <= 0) and legs:
        # If OSRM omits these top-level fields, compute them from legs.
        distance_m = sum(leg.distance_m for leg in legs)
        duration_s = sum(leg.duration_s for leg in legs)

    return RouteResult(
        coordinates=tuple(coords),
        distance_m=distance_m,
        duration_s=duration_s,
        legs=tuple(legs),
        provider=PROVIDER_ID,
    )


class OSRMClient:
    name = PROVIDER_ID

    def __init__(
        self,
        *,
        base_url: str,
        profile: str = "driving-hgv",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self._client = client or new_async_client()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _hint(self) -> str:
        # Add a targeted hint for the most common misconfigurations.
        host = urlparse(self.base_url).hostname or ""
        if _running_in_docker() and host in _LOCALHOST_HOSTS:
            return (
                " Hint: you're running inside a container; `localhost` points to that container. "
                "In docker-compose, set OSRM_BASE_URL=http://osrm:5000."
            )
        if (not _running_in_docker()) and host == "osrm":
            return (
                " Hint: `osrm` is the docker-compose service name. "
                "If you're running directly on your host, set OSRM_BASE_URL=http://localhost:5000."
            )
        return ""

    async def fetch_route(self, request: RouteRequest, *, timeout_s: float) -> RouteResult:
        o, d = request.origin, request.destination
        coords = f"{o.lon},{o.lat};{d.lon},{d.lat}"
        url = f"{self.base_url}/route/v1/{self.profile}/{coords}"

        params: dict[str, str] = {
            "overview": "full",
            "geometries": "geojson",
            "steps": "false",
            "alternatives": "false",
        }
        exclude = exclude_classes(request.preferences)
        if exclude:
            params["exclude"] = exclude

        try:
            data = await request_json(
                self._client,
                "GET",
                url,
                provider=PROVIDER_ID,
                timeout_s=timeout_s,
                params=params,
                # OSRM reports NoRoute/NoSegment as 400 with a JSON body.
                allow_statuses=frozenset({400}),
            )
        except NetworkError as e:
            hint = self._hint()
            if hint and not isinstance(e, ProviderHTTPError):
                raise NetworkError(f"{e.message}{hint}", provider=PROVIDER_ID) from e
            raise
        return parse_osrm_route(data)

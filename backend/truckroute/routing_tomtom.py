from __future__ import annotations

from typing import Any

import httpx

from .errors import DecodeError, NoRouteFound, ProviderNotConfigured
from .models import Coordinate, RouteLeg, RoutePreferences, RouteRequest, RouteResult, VehicleProfile
from .provider_http import new_async_client, request_json

PROVIDER_ID = "tomtom"

_AVOID_FLAGS: tuple[tuple[str, str], ...] = (
    ("avoid_tolls", "tollRoads"),
    ("avoid_motorways", "motorways"),
    ("avoid_ferries", "ferries"),
    ("avoid_unpaved", "unpavedRoads"),
    ("avoid_tunnels", "tunnels"),
    ("avoid_borders", "borderCrossings"),
)


def _load_type(hazmat_class: str) -> str:
    text = hazmat_class.strip()
    if text.isdigit():
        return f"USHazmatClass{int(text)}"
    return text


def truck_query_params(vehicle: VehicleProfile, preferences: RoutePreferences) -> dict[str, Any]:
    """TomTom truck parameters. Weights go out in kg, dimensions in metres."""
    params: dict[str, Any] = {
        "vehicleWeight": str(int(round(vehicle.weight_t * 1000.0))),
        "vehicleLength": f"{vehicle.length_m:.2f}",
        "vehicleWidth": f"{vehicle.width_m:.2f}",
        "vehicleHeight": f"{vehicle.height_m:.2f}",
        "vehicleNumberOfAxles": str(vehicle.axle_count),
    }
    if vehicle.axle_weight_t is not None:
        params["vehicleAxleWeight"] = str(int(round(vehicle.axle_weight_t * 1000.0)))
    if vehicle.commercial:
        params["vehicleCommercial"] = "true"
    if vehicle.hazmat_classes:
        params["vehicleLoadType"] = ",".join(sorted(_load_type(c) for c in vehicle.hazmat_classes))

    avoid = [value for flag, value in _AVOID_FLAGS if getattr(preferences, flag)]
    if avoid:
        params["avoid"] = avoid
    return params


def parse_tomtom_route(data: Any) -> RouteResult:
    if not isinstance(data, dict):
        raise DecodeError("TomTom payload is not an object", provider=PROVIDER_ID)
    routes = data.get("routes")
    if routes is None:
        raise DecodeError("TomTom payload missing routes", provider=PROVIDER_ID)
    if not isinstance(routes, list) or not routes:
        raise NoRouteFound("TomTom returned no routes", provider=PROVIDER_ID)

    route = routes[0]
    try:
        summary = route["summary"]
        coords: list[Coordinate] = []
        legs: list[RouteLeg] = []
        for leg in route["legs"]:
            points = [(float(p["latitude"]), float(p["longitude"])) for p in leg["points"]]
            leg_summary = leg.get("summary") or {}
            legs.append(
                RouteLeg(
                    distance_m=float(leg_summary.get("lengthInMeters", 0.0)),
                    duration_s=float(leg_summary.get("travelTimeInSeconds", 0.0)),
                    point_count=len(points),
                )
            )
            coords.extend(points)
        distance = float(summary["lengthInMeters"])
        duration = float(summary["travelTimeInSeconds"])
        delay = summary.get("trafficDelayInSeconds")
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"TomTom route malformed: {e!r}", provider=PROVIDER_ID) from e

    if len(coords) < 2:
        raise DecodeError("TomTom route geometry has fewer than 2 points", provider=PROVIDER_ID)

    return RouteResult(
        coordinates=tuple(coords),
        distance_m=distance,
        duration_s=duration,
        traffic_delay_s=float(delay) if delay is not None else None,
        legs=tuple(legs),
        provider=PROVIDER_ID,
    )


class TomTomRoutingClient:
    name = PROVIDER_ID

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client or new_async_client()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_route(self, request: RouteRequest, *, timeout_s: float) -> RouteResult:
        if not self.api_key:
            raise ProviderNotConfigured("TomTom API key is not configured", provider=PROVIDER_ID)

        o, d = request.origin, request.destination
        url = f"{self.base_url}/{o.lat},{o.lon}:{d.lat},{d.lon}/json"
        params: dict[str, Any] = {
            "key": self.api_key,
            "travelMode": "truck",
            "traffic": "true",
            "routeType": "fastest",
            "instructionsType": "text",
        }
        params.update(truck_query_params(request.vehicle, request.preferences))

        data = await request_json(
            self._client,
            "GET",
            url,
            provider=PROVIDER_ID,
            timeout_s=timeout_s,
            params=params,
        )
        return parse_tomtom_route(data)

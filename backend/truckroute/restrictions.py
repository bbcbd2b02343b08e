"""Restriction Query Service.

Route geometry is sampled at a fixed arc length, each sample is queried on
Overpass for ways tagged maxheight/maxweight/maxwidth/maxlength, tag values
are normalised to metres/tonnes, and duplicates of the same physical
restriction are merged keeping the most restrictive value. The result is
cached per (route, vehicle profile) and treated as read-only afterwards.

A failing data source never fails the route: callers get an empty set
flagged ``routing_only``.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Iterable, Sequence
from typing import Any, Protocol

import httpx

from .errors import DecodeError, NetworkError, RestrictionQueryFailed, TruckRouteError
from .geo import cumulative_distances_m, distance_m, nearest_segment, offset_along, sample_by_arc_length
from .logging_utils import log_event
from .metrics_store import incr
from .models import (
    RESTRICTION_DIMENSION,
    Coordinate,
    Restriction,
    RestrictionSet,
    RouteResult,
    VehicleProfile,
)
from .provider_http import new_async_client, request_json
from .restriction_cache import RESTRICTION_CACHE, RestrictionCacheStore, cache_key
from .settings import settings
from .units import normalize_restriction_value

PROVIDER_ID = "overpass"

RESTRICTION_TAGS: tuple[str, ...] = tuple(RESTRICTION_DIMENSION)

# Overpass rejects very long unions; split the sampled points into batches.
_POINTS_PER_QUERY = 40

_UNIT_RE = re.compile(r"[a-z'\"]", re.IGNORECASE)


def build_overpass_query(points: Sequence[Coordinate], *, radius_m: int, timeout_s: float) -> str:
    clauses = []
    for lat, lon in points:
        for tag in RESTRICTION_TAGS:
            clauses.append(f'  way(around:{int(radius_m)},{lat:.6f},{lon:.6f})["{tag}"];')
    body = "\n".join(clauses)
    return f"[out:json][timeout:{max(1, int(timeout_s))}];\n(\n{body}\n);\nout body geom;"


class RestrictionSource(Protocol):
    name: str

    async def fetch_elements(
        self,
        points: Sequence[Coordinate],
        *,
        radius_m: int,
        timeout_s: float,
    ) -> list[dict[str, Any]]: ...


class OverpassClient:
    name = PROVIDER_ID

    def __init__(self, base_url: str, *, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url
        self._client = client or new_async_client()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_elements(
        self,
        points: Sequence[Coordinate],
        *,
        radius_m: int,
        timeout_s: float,
    ) -> list[dict[str, Any]]:
        elements: list[dict[str, Any]] = []
        for start in range(0, len(points), _POINTS_PER_QUERY):
            batch = points[start : start + _POINTS_PER_QUERY]
            ql = build_overpass_query(batch, radius_m=radius_m, timeout_s=timeout_s)
            data = await request_json(
                self._client,
                "POST",
                self.base_url,
                provider=PROVIDER_ID,
                timeout_s=timeout_s,
                data={"data": ql},
            )
            if not isinstance(data, dict) or not isinstance(data.get("elements"), list):
                raise DecodeError("Overpass payload missing elements", provider=PROVIDER_ID)
            elements.extend(e for e in data["elements"] if isinstance(e, dict))
        return elements


def _element_geometry(element: dict[str, Any]) -> list[Coordinate]:
    out: list[Coordinate] = []
    for node in element.get("geometry") or []:
        try:
            out.append((float(node["lat"]), float(node["lon"])))
        except (KeyError, TypeError, ValueError):
            continue
    if not out and "lat" in element and "lon" in element:
        out.append((float(element["lat"]), float(element["lon"])))
    return out


def _tag_confidence(raw: str) -> float:
    # Unitless values are assumed metric/tonnes; tagged units are unambiguous.
    return 1.0 if _UNIT_RE.search(raw) else 0.9


def parse_elements(
    elements: Iterable[dict[str, Any]],
    route_points: Sequence[Coordinate],
    *,
    tolerance_m: float,
    cumulative_m: Sequence[float] | None = None,
) -> list[Restriction]:
    """One Restriction per restriction tag per element that lies near the route.

    Location is the element's geometry node nearest the route; elements whose
    nearest node is farther than ``tolerance_m`` from every route segment are
    dropped. ``route_offset_m`` is the along-route offset of that node
    projected onto the route.
    """
    if not route_points:
        return []
    offsets = list(cumulative_m) if cumulative_m is not None else cumulative_distances_m(route_points)

    out: list[Restriction] = []
    seen: set[str] = set()
    unparsed = 0
    for element in elements:
        tags = element.get("tags") or {}
        if not any(tag in tags for tag in RESTRICTION_TAGS):
            continue
        geometry = _element_geometry(element)
        if not geometry:
            continue

        projections = [(nearest_segment(route_points, node), node) for node in geometry]
        (route_idx, fraction, off_route_m), location = min(projections, key=lambda p: p[0][2])
        if off_route_m > tolerance_m:
            continue

        osm_id = f"{element.get('type', 'way')}/{element.get('id', 'unknown')}"
        for tag in RESTRICTION_TAGS:
            raw = tags.get(tag)
            if raw is None:
                continue
            restriction_id = f"osm:{osm_id}:{tag}"
            if restriction_id in seen:
                continue
            limit = normalize_restriction_value(tag, str(raw))
            if limit is None or limit <= 0:
                unparsed += 1
                continue
            seen.add(restriction_id)
            out.append(
                Restriction(
                    restriction_id=restriction_id,
                    type=tag,  # type: ignore[arg-type]
                    limit=round(limit, 4),
                    road_id=osm_id,
                    road_name=tags.get("name") or tags.get("ref"),
                    location=location,
                    segment=tuple(geometry) if len(geometry) > 1 else None,
                    confidence=_tag_confidence(str(raw)),
                    route_offset_m=round(offset_along(offsets, route_idx, fraction), 1),
                    raw_value=str(raw),
                )
            )
    if unparsed:
        log_event("restriction_values_unparsed", count=unparsed)
    return out


def _same_restriction(a: Restriction, b: Restriction, *, dedup_distance_m: float) -> bool:
    if a.type != b.type:
        return False
    if distance_m(a.location, b.location) > dedup_distance_m:
        return False
    if a.road_id is not None and a.road_id == b.road_id:
        return True
    return a.road_name is not None and a.road_name == b.road_name


def deduplicate(restrictions: Iterable[Restriction], *, dedup_distance_m: float) -> list[Restriction]:
    """Merge records of the same physical restriction.

    Same type, same road (id or name) and locations within
    ``dedup_distance_m``. The lowest limit wins; confidence is the highest of
    the merged records. Output is ordered by along-route offset.
    """
    kept: list[Restriction] = []
    for candidate in restrictions:
        for i, existing in enumerate(kept):
            if not _same_restriction(existing, candidate, dedup_distance_m=dedup_distance_m):
                continue
            winner = candidate if candidate.limit < existing.limit else existing
            confidence = max(existing.confidence, candidate.confidence)
            if winner.confidence != confidence:
                winner = winner.model_copy(update={"confidence": confidence})
            kept[i] = winner
            break
        else:
            kept.append(candidate)
    return sorted(kept, key=lambda r: (r.route_offset_m if r.route_offset_m is not None else 0.0, r.restriction_id))


class RestrictionQueryService:
    def __init__(
        self,
        source: RestrictionSource,
        *,
        cache: RestrictionCacheStore | None = None,
        sample_interval_m: float | None = None,
        radius_m: int | None = None,
        tolerance_m: float | None = None,
        dedup_distance_m: float | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.source = source
        self.cache = cache if cache is not None else RESTRICTION_CACHE
        self.sample_interval_m = float(sample_interval_m or settings.restriction_sample_interval_m)
        self.radius_m = int(radius_m or settings.restriction_search_radius_m)
        self.tolerance_m = float(tolerance_m or settings.restriction_route_tolerance_m)
        self.dedup_distance_m = float(dedup_distance_m or settings.restriction_dedup_distance_m)
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.restriction_timeout_s)

    async def _fetch(self, points: Sequence[Coordinate], *, radius_m: int) -> list[dict[str, Any]]:
        try:
            return await asyncio.wait_for(
                self.source.fetch_elements(points, radius_m=radius_m, timeout_s=self.timeout_s),
                timeout=self.timeout_s,
            )
        except TimeoutError as e:
            raise NetworkError(
                f"{self.source.name} did not answer within {self.timeout_s:.1f}s",
                provider=self.source.name,
            ) from e

    async def load_restrictions(self, route: RouteResult, profile: VehicleProfile) -> RestrictionSet:
        fingerprint = profile.fingerprint()
        key = cache_key(route.route_id, fingerprint)
        cached = self.cache.get(key)
        if cached is not None:
            incr("restriction_cache_hit")
            return cached

        t0 = time.perf_counter()
        samples = sample_by_arc_length(route.coordinates, self.sample_interval_m)
        try:
            elements = await self._fetch(samples, radius_m=self.radius_m)
            parsed = parse_elements(elements, route.coordinates, tolerance_m=self.tolerance_m)
        except TruckRouteError as e:
            failure = RestrictionQueryFailed(
                f"Restriction data unavailable ({e.reason_code}); continuing with routing only",
                provider=e.provider or self.source.name,
                details={"cause": e.reason_code},
            )
            incr("routing_only")
            log_event(
                "restriction_query_failed",
                route_id=route.route_id,
                reason_code=failure.reason_code,
                cause=e.reason_code,
                error=str(e),
                sample_count=len(samples),
            )
            # Not cached: the next activation of this route retries.
            return RestrictionSet.empty(route.route_id, error=failure.message, profile_fingerprint=fingerprint)

        restrictions = deduplicate(parsed, dedup_distance_m=self.dedup_distance_m)
        result = RestrictionSet(
            route_id=route.route_id,
            profile_fingerprint=fingerprint,
            restrictions=tuple(restrictions),
        )
        self.cache.set(key, result)
        log_event(
            "restrictions_loaded",
            route_id=route.route_id,
            sample_count=len(samples),
            element_count=len(elements),
            parsed_count=len(parsed),
            restriction_count=len(restrictions),
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return result

    def forget_route(self, route_id: str) -> int:
        """Drop every cached set for a route that is no longer active."""
        dropped = self.cache.invalidate_route(route_id)
        if dropped:
            log_event("restriction_cache_invalidated", route_id=route_id, entries=dropped)
        return dropped

    async def load_restrictions_nearby(self, coordinate: Coordinate, *, radius_m: int = 1000) -> list[Restriction]:
        """Ad-hoc single-point lookup. Unlike route loads, failures propagate."""
        try:
            elements = await self._fetch([coordinate], radius_m=radius_m)
        except TruckRouteError as e:
            raise RestrictionQueryFailed(
                f"Restriction lookup failed: {e}",
                provider=e.provider or self.source.name,
                details={"cause": e.reason_code},
            ) from e
        parsed = parse_elements(elements, [coordinate], tolerance_m=float(radius_m))
        return sorted(
            deduplicate(parsed, dedup_distance_m=self.dedup_distance_m),
            key=lambda r: distance_m(coordinate, r.location),
        )

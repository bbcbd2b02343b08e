from __future__ import annotations

import hashlib
import json
import uuid
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .units import feet_to_meters, pounds_to_tonnes

Coordinate = tuple[float, float]  # (lat, lon)

RestrictionType = Literal["maxheight", "maxweight", "maxwidth", "maxlength"]
Dimension = Literal["height", "weight", "width", "length"]
Severity = Literal["marginal", "moderate", "severe"]

RESTRICTION_DIMENSION: dict[str, Dimension] = {
    "maxheight": "height",
    "maxweight": "weight",
    "maxwidth": "width",
    "maxlength": "length",
}


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)

    def as_tuple(self) -> Coordinate:
        return (self.lat, self.lon)


class VehicleProfile(BaseModel):
    """Vehicle snapshot in canonical metric units (metres, tonnes)."""

    model_config = ConfigDict(frozen=True)

    height_m: float = Field(default=4.11, gt=0, le=10)
    width_m: float = Field(default=2.44, gt=0, le=10)
    length_m: float = Field(default=16.15, gt=0, le=60)
    weight_t: float = Field(default=36.287, gt=0, le=250)
    axle_count: int = Field(default=5, ge=2, le=20)
    axle_weight_t: float | None = Field(default=None, gt=0)
    hazmat_classes: frozenset[str] = Field(default_factory=frozenset)
    commercial: bool = True

    @field_validator("hazmat_classes", mode="before")
    @classmethod
    def _normalize_hazmat(cls, value: object) -> frozenset[str]:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = [value]
        return frozenset(str(item).strip() for item in value if str(item).strip())  # type: ignore[union-attr]

    @classmethod
    def from_imperial(
        cls,
        *,
        height_ft: float,
        width_ft: float,
        length_ft: float,
        weight_lb: float,
        **kwargs: object,
    ) -> "VehicleProfile":
        return cls(
            height_m=feet_to_meters(height_ft),
            width_m=feet_to_meters(width_ft),
            length_m=feet_to_meters(length_ft),
            weight_t=pounds_to_tonnes(weight_lb),
            **kwargs,
        )

    def dimension(self, name: Dimension) -> float:
        return {
            "height": self.height_m,
            "weight": self.weight_t,
            "width": self.width_m,
            "length": self.length_m,
        }[name]

    def fingerprint(self) -> str:
        payload = self.model_dump(mode="json")
        payload["hazmat_classes"] = sorted(self.hazmat_classes)
        raw = json.dumps(payload, sort_keys=True)
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


class RoutePreferences(BaseModel):
    model_config = ConfigDict(frozen=True)

    avoid_tolls: bool = False
    avoid_motorways: bool = False
    avoid_ferries: bool = False
    avoid_unpaved: bool = True
    avoid_tunnels: bool = False
    avoid_borders: bool = False


class RouteRequest(BaseModel):
    origin: LatLng
    destination: LatLng
    vehicle: VehicleProfile = Field(default_factory=VehicleProfile)
    preferences: RoutePreferences = Field(default_factory=RoutePreferences)


class RouteLeg(BaseModel):
    model_config = ConfigDict(frozen=True)

    distance_m: float = Field(..., ge=0)
    duration_s: float = Field(..., ge=0)
    point_count: int = Field(default=0, ge=0)
    summary: str | None = None


class RouteResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    route_id: str = Field(default_factory=_new_id)
    coordinates: tuple[Coordinate, ...]
    distance_m: float = Field(..., ge=0)
    duration_s: float = Field(..., ge=0)
    traffic_delay_s: float | None = None
    legs: tuple[RouteLeg, ...] = ()
    provider: str
    created_at: datetime = Field(default_factory=_utc_now)


class Maneuver(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    modifier: str | None = None
    instruction: str = ""
    location: Coordinate | None = None
    distance_m: float = 0.0
    duration_s: float = 0.0
    road_name: str | None = None


class MatchedPath(BaseModel):
    model_config = ConfigDict(frozen=True)

    coordinates: tuple[Coordinate, ...]
    maneuvers: tuple[Maneuver, ...] = ()
    confidence: float | None = None
    distance_m: float = 0.0
    duration_s: float = 0.0
    source_route_id: str
    provider: str = "mapbox"


class GuidancePath(BaseModel):
    """What the map renderer gets: a matched path, or raw geometry when matching degraded."""

    model_config = ConfigDict(frozen=True)

    route_id: str
    coordinates: tuple[Coordinate, ...]
    matched: MatchedPath | None = None
    degraded: bool = False
    warning: str | None = None


class Restriction(BaseModel):
    model_config = ConfigDict(frozen=True)

    restriction_id: str
    type: RestrictionType
    limit: float = Field(..., gt=0)
    road_id: str | None = None
    road_name: str | None = None
    location: Coordinate
    segment: tuple[Coordinate, ...] | None = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    route_offset_m: float | None = None
    raw_value: str | None = None
    source: str = "osm"

    @property
    def dimension(self) -> Dimension:
        return RESTRICTION_DIMENSION[self.type]

    @property
    def unit(self) -> str:
        return "t" if self.type == "maxweight" else "m"


class RestrictionSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    route_id: str
    profile_fingerprint: str | None = None
    restrictions: tuple[Restriction, ...] = ()
    routing_only: bool = False
    error: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)

    @classmethod
    def empty(cls, route_id: str, *, error: str | None = None, profile_fingerprint: str | None = None) -> "RestrictionSet":
        return cls(
            route_id=route_id,
            profile_fingerprint=profile_fingerprint,
            restrictions=(),
            routing_only=error is not None,
            error=error,
        )


class HazardAdvisory(BaseModel):
    model_config = ConfigDict(frozen=True)

    advisory_id: str = Field(default_factory=_new_id)
    restriction: Restriction
    dimension: Dimension
    vehicle_value: float
    exceedance: float
    severity: Severity
    distance_ahead_m: float
    dismissed: bool = False
    title: str = ""
    message: str = ""
    distance_text: str = ""
    created_at: datetime = Field(default_factory=_utc_now)


class CongestionSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: int = Field(..., ge=0, le=3)
    free_flow_speed_kmh: float | None = None
    current_speed_kmh: float | None = None
    provider: str
    low_confidence: bool = False
    confidence: float | None = None
    road_closure: bool = False
    sampled_at: datetime = Field(default_factory=_utc_now)


class PositionFix(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    course_deg: float | None = Field(default=None, ge=0, lt=360)
    speed_mps: float | None = Field(default=None, ge=0)

    def as_tuple(self) -> Coordinate:
        return (self.lat, self.lon)


# --- API payloads ---


class RouteResponse(BaseModel):
    route: RouteResult
    guidance: GuidancePath
    warnings: list[str] = Field(default_factory=list)


class MatchRequest(BaseModel):
    route: RouteResult


class RestrictionQueryRequest(BaseModel):
    route: RouteResult
    vehicle: VehicleProfile = Field(default_factory=VehicleProfile)


class NearbyRestrictionRequest(BaseModel):
    coordinate: LatLng
    radius_m: int = Field(default=1000, ge=10, le=5000)


class TrafficRequest(BaseModel):
    coordinate: LatLng


class SessionCreateRequest(BaseModel):
    vehicle: VehicleProfile = Field(default_factory=VehicleProfile)


class SessionRouteRequest(BaseModel):
    origin: LatLng
    destination: LatLng
    preferences: RoutePreferences = Field(default_factory=RoutePreferences)


class SessionStatus(BaseModel):
    session_id: str
    vehicle: VehicleProfile
    route: RouteResult | None = None
    guidance: GuidancePath | None = None
    restriction_count: int = 0
    routing_only: bool = False
    advisory: HazardAdvisory | None = None
    congestion: CongestionSample | None = None
    monitoring: bool = False
    closed: bool = False


class SessionEventPayload(BaseModel):
    session_id: str
    kind: str
    advisory: HazardAdvisory | None = None
    congestion: CongestionSample | None = None
    route_id: str | None = None
    emitted_at: datetime = Field(default_factory=_utc_now)

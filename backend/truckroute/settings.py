from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _running_in_docker() -> bool:
    """Best-effort check for container execution.

    Used only to pick sensible defaults. Environment variables always win.
    """
    return Path("/.dockerenv").exists() or os.environ.get("RUNNING_IN_DOCKER") == "1"


def _default_osrm_base_url() -> str:
    # In docker-compose, OSRM is reachable by service name "osrm".
    return "http://osrm:5000" if _running_in_docker() else "http://localhost:5000"


def _default_out_dir() -> str:
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven). Read-only at runtime."""

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Routing providers (primary: TomTom truck routing, secondary: OSRM truck profile)
    tomtom_api_key: str = Field(default="", alias="TOMTOM_API_KEY")
    tomtom_routing_url: str = Field(
        default="https://api.tomtom.com/routing/1/calculateRoute",
        alias="TOMTOM_ROUTING_URL",
    )
    osrm_base_url: str = Field(default_factory=_default_osrm_base_url, alias="OSRM_BASE_URL")
    osrm_profile: str = Field(default="driving-hgv", alias="OSRM_PROFILE")
    osrm_enabled: bool = Field(default=True, alias="OSRM_ENABLED")
    routing_timeout_s: float = Field(default=10.0, gt=0.0, le=120.0, alias="ROUTING_TIMEOUT_S")

    # Map matching (Mapbox Map Matching v5)
    mapbox_access_token: str = Field(default="", alias="MAPBOX_ACCESS_TOKEN")
    mapbox_matching_url: str = Field(
        default="https://api.mapbox.com/matching/v5/mapbox",
        alias="MAPBOX_MATCHING_URL",
    )
    mapbox_matching_profile: str = Field(default="driving-traffic", alias="MAPBOX_MATCHING_PROFILE")
    matching_timeout_s: float = Field(default=10.0, gt=0.0, le=120.0, alias="MATCHING_TIMEOUT_S")
    matching_max_coordinates: int = Field(default=100, ge=2, le=100, alias="MATCHING_MAX_COORDINATES")

    # Restriction data (OpenStreetMap Overpass)
    overpass_url: str = Field(
        default="https://overpass-api.de/api/interpreter",
        alias="OVERPASS_URL",
    )
    restriction_timeout_s: float = Field(default=25.0, gt=0.0, le=180.0, alias="RESTRICTION_TIMEOUT_S")
    restriction_sample_interval_m: float = Field(
        default=500.0, gt=0.0, alias="RESTRICTION_SAMPLE_INTERVAL_M"
    )
    restriction_search_radius_m: int = Field(default=100, ge=10, le=1000, alias="RESTRICTION_SEARCH_RADIUS_M")
    restriction_route_tolerance_m: float = Field(
        default=200.0, gt=0.0, alias="RESTRICTION_ROUTE_TOLERANCE_M"
    )
    restriction_dedup_distance_m: float = Field(
        default=25.0, ge=0.0, alias="RESTRICTION_DEDUP_DISTANCE_M"
    )
    restriction_cache_ttl_s: int = Field(default=3600, ge=1, alias="RESTRICTION_CACHE_TTL_S")
    restriction_cache_max_entries: int = Field(default=64, ge=1, alias="RESTRICTION_CACHE_MAX_ENTRIES")

    # Hazard monitor
    hazard_warnings_enabled: bool = Field(default=True, alias="HAZARD_WARNINGS_ENABLED")
    hazard_interval_s: float = Field(default=5.0, gt=0.0, alias="HAZARD_INTERVAL_S")
    hazard_distance_trigger_m: float = Field(default=100.0, gt=0.0, alias="HAZARD_DISTANCE_TRIGGER_M")
    hazard_advisory_distance_m: float = Field(default=2400.0, gt=0.0, alias="HAZARD_ADVISORY_DISTANCE_M")
    safety_margin_height_m: float = Field(default=0.10, ge=0.0, alias="SAFETY_MARGIN_HEIGHT_M")
    safety_margin_width_m: float = Field(default=0.05, ge=0.0, alias="SAFETY_MARGIN_WIDTH_M")
    safety_margin_length_m: float = Field(default=0.10, ge=0.0, alias="SAFETY_MARGIN_LENGTH_M")
    safety_margin_weight_t: float = Field(default=0.10, ge=0.0, alias="SAFETY_MARGIN_WEIGHT_T")
    use_imperial_units: bool = Field(default=True, alias="USE_IMPERIAL_UNITS")

    # Traffic flow (primary: TomTom flowSegmentData, secondary: HERE flow v7)
    tomtom_flow_url: str = Field(
        default="https://api.tomtom.com/traffic/services/4/flowSegmentData/absolute/10/json",
        alias="TOMTOM_FLOW_URL",
    )
    here_api_key: str = Field(default="", alias="HERE_API_KEY")
    here_flow_url: str = Field(default="https://data.traffic.hereapi.com/v7/flow", alias="HERE_FLOW_URL")
    here_flow_radius_m: int = Field(default=50, ge=10, le=1000, alias="HERE_FLOW_RADIUS_M")
    traffic_timeout_s: float = Field(default=10.0, gt=0.0, le=120.0, alias="TRAFFIC_TIMEOUT_S")
    traffic_refresh_interval_s: float = Field(default=180.0, gt=0.0, alias="TRAFFIC_REFRESH_INTERVAL_S")

    @model_validator(mode="after")
    def _normalize_urls(self) -> "Settings":
        self.osrm_base_url = self.osrm_base_url.rstrip("/")
        self.mapbox_matching_url = self.mapbox_matching_url.rstrip("/")
        self.tomtom_routing_url = self.tomtom_routing_url.rstrip("/")
        return self


settings = Settings()

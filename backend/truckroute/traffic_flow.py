"""Traffic Flow Classifier: provider flow signals mapped onto one 0-3 congestion scale."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from .errors import DecodeError, NetworkError, ProviderExhausted, ProviderNotConfigured, TruckRouteError
from .logging_utils import log_event
from .metrics_store import incr
from .models import CongestionSample, Coordinate
from .provider_http import new_async_client, request_json
from .settings import settings

FREE_FLOW_RATIO = 0.75
SLOW_RATIO = 0.5
CONGESTED_RATIO = 0.25


def level_from_ratio(ratio: float) -> int:
    """current/free-flow speed ratio -> 0 free, 1 slow, 2 congestion, 3 heavy."""
    if ratio >= FREE_FLOW_RATIO:
        return 0
    if ratio >= SLOW_RATIO:
        return 1
    if ratio >= CONGESTED_RATIO:
        return 2
    return 3


def level_from_jam_factor(jam_factor: float) -> int:
    """HERE jamFactor (0 free .. 10 closed) -> the same 0-3 scale."""
    if jam_factor < 4:
        return 0
    if jam_factor < 8:
        return 1
    if jam_factor < 10:
        return 2
    return 3


@dataclass(frozen=True)
class RawFlow:
    provider: str
    current_speed_kmh: float | None = None
    free_flow_speed_kmh: float | None = None
    jam_factor: float | None = None
    confidence: float | None = None
    road_closure: bool = False


def to_sample(raw: RawFlow) -> CongestionSample:
    level = 0
    low_confidence = False
    if raw.road_closure:
        level = 3
    elif raw.jam_factor is not None:
        level = level_from_jam_factor(raw.jam_factor)
    elif raw.current_speed_kmh is not None and raw.free_flow_speed_kmh:
        level = level_from_ratio(raw.current_speed_kmh / raw.free_flow_speed_kmh)
    else:
        low_confidence = True
    return CongestionSample(
        level=level,
        free_flow_speed_kmh=raw.free_flow_speed_kmh,
        current_speed_kmh=raw.current_speed_kmh,
        provider=raw.provider,
        low_confidence=low_confidence,
        confidence=raw.confidence,
        road_closure=raw.road_closure,
    )


def _opt_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class TrafficFlowProvider(Protocol):
    name: str

    async def fetch_flow(self, coordinate: Coordinate, *, timeout_s: float) -> RawFlow: ...


class TomTomFlowClient:
    name = "tomtom_flow"

    def __init__(self, base_url: str, api_key: str, *, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self._client = client or new_async_client()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_flow(self, coordinate: Coordinate, *, timeout_s: float) -> RawFlow:
        if not self.api_key:
            raise ProviderNotConfigured("TomTom API key is not configured", provider=self.name)
        lat, lon = coordinate
        data = await request_json(
            self._client,
            "GET",
            self.base_url,
            provider=self.name,
            timeout_s=timeout_s,
            params={"key": self.api_key, "point": f"{lat},{lon}", "unit": "KMPH"},
        )
        segment = data.get("flowSegmentData") if isinstance(data, dict) else None
        if not isinstance(segment, dict):
            raise DecodeError("TomTom flow payload missing flowSegmentData", provider=self.name)
        return RawFlow(
            provider=self.name,
            current_speed_kmh=_opt_float(segment.get("currentSpeed")),
            free_flow_speed_kmh=_opt_float(segment.get("freeFlowSpeed")),
            confidence=_opt_float(segment.get("confidence")),
            road_closure=bool(segment.get("roadClosure", False)),
        )


class HereFlowClient:
    name = "here_flow"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        radius_m: int = 50,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.radius_m = int(radius_m)
        self._client = client or new_async_client()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_flow(self, coordinate: Coordinate, *, timeout_s: float) -> RawFlow:
        if not self.api_key:
            raise ProviderNotConfigured("HERE API key is not configured", provider=self.name)
        lat, lon = coordinate
        data = await request_json(
            self._client,
            "GET",
            self.base_url,
            provider=self.name,
            timeout_s=timeout_s,
            params={
                "apiKey": self.api_key,
                "in": f"circle:{lat},{lon};r={self.radius_m}",
                "locationReferencing": "none",
            },
        )
        if not isinstance(data, dict) or not isinstance(data.get("results"), list):
            raise DecodeError("HERE flow payload missing results", provider=self.name)
        if not data["results"]:
            # No flow data for this spot is not a failure.
            return RawFlow(provider=self.name)

        flow = data["results"][0].get("currentFlow") or {}
        speed = _opt_float(flow.get("speedUncapped", flow.get("speed")))
        free_flow = _opt_float(flow.get("freeFlow"))
        return RawFlow(
            provider=self.name,
            # HERE reports m/s.
            current_speed_kmh=speed * 3.6 if speed is not None else None,
            free_flow_speed_kmh=free_flow * 3.6 if free_flow is not None else None,
            jam_factor=_opt_float(flow.get("jamFactor")),
            confidence=_opt_float(flow.get("confidence")),
            road_closure=str(flow.get("traversability", "open")).lower() == "closed",
        )


class TrafficFlowClassifier:
    def __init__(
        self,
        primary: TrafficFlowProvider,
        secondary: TrafficFlowProvider | None = None,
        *,
        timeout_s: float | None = None,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.traffic_timeout_s)

    async def _call(self, provider: TrafficFlowProvider, coordinate: Coordinate) -> CongestionSample:
        try:
            raw = await asyncio.wait_for(
                provider.fetch_flow(coordinate, timeout_s=self.timeout_s),
                timeout=self.timeout_s,
            )
        except TimeoutError as e:
            raise NetworkError(
                f"{provider.name} did not answer within {self.timeout_s:.1f}s",
                provider=provider.name,
            ) from e
        try:
            return to_sample(raw)
        except ValidationError as e:
            raise DecodeError(f"{provider.name} flow failed validation", provider=provider.name) from e

    async def classify(self, coordinate: Coordinate) -> CongestionSample:
        errors: list[TruckRouteError] = []
        providers = [self.primary] + ([self.secondary] if self.secondary is not None else [])
        for hop, provider in enumerate(providers):
            if hop:
                incr("traffic_fallback")
                log_event("traffic_fallback", primary=self.primary.name, secondary=provider.name)
            try:
                sample = await self._call(provider, coordinate)
            except TruckRouteError as e:
                errors.append(e)
                log_event(
                    "traffic_provider_failed",
                    provider=provider.name,
                    reason_code=e.reason_code,
                    error=str(e),
                )
                continue
            log_event(
                "traffic_classified",
                provider=sample.provider,
                level=sample.level,
                low_confidence=sample.low_confidence,
                fallback_used=hop > 0,
            )
            return sample
        raise ProviderExhausted("No traffic flow provider answered", errors=errors)


class TrafficRefresher:
    """Periodic refresh on its own cadence, independent of the Hazard Monitor."""

    def __init__(self, refresh: Callable[[], Awaitable[Any]], *, interval_s: float | None = None) -> None:
        self._refresh = refresh
        self.interval_s = float(interval_s if interval_s is not None else settings.traffic_refresh_interval_s)
        self._task: asyncio.Task[None] | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run(), name="traffic-refresh")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            t0 = time.monotonic()
            try:
                await self._refresh()
            except TruckRouteError as e:
                # Previous sample stays in place.
                log_event("traffic_refresh_failed", level=logging.WARNING, reason_code=e.reason_code, error=str(e))
            except Exception as e:
                log_event("traffic_refresh_failed", level=logging.ERROR, error=repr(e))
            self.ticks += 1
            await asyncio.sleep(max(0.0, self.interval_s - (time.monotonic() - t0)))

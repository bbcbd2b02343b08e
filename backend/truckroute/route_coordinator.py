from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from pydantic import ValidationError

from .errors import DecodeError, NetworkError, NoRouteFound, ProviderExhausted, TruckRouteError
from .logging_utils import log_event
from .metrics_store import incr
from .models import RouteRequest, RouteResult
from .settings import settings


class RouteProvider(Protocol):
    name: str

    async def fetch_route(self, request: RouteRequest, *, timeout_s: float) -> RouteResult: ...


class CoordinatorState(str, Enum):
    IDLE = "idle"
    CALLING_PRIMARY = "calling_primary"
    CALLING_SECONDARY = "calling_secondary"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class RouteComputation:
    """Trace of one computeRoute call through the fallback state machine."""

    state: CoordinatorState = CoordinatorState.IDLE
    history: list[CoordinatorState] = field(default_factory=lambda: [CoordinatorState.IDLE])
    errors: list[TruckRouteError] = field(default_factory=list)
    provider: str | None = None

    def advance(self, state: CoordinatorState) -> None:
        self.state = state
        self.history.append(state)


async def call_with_timeout(provider: RouteProvider, request: RouteRequest, *, timeout_s: float) -> RouteResult:
    """A single hop. Timeouts and malformed payloads become fallback-eligible errors."""
    try:
        result = await asyncio.wait_for(provider.fetch_route(request, timeout_s=timeout_s), timeout=timeout_s)
    except TimeoutError as e:
        raise NetworkError(
            f"{provider.name} did not answer within {timeout_s:.1f}s",
            provider=provider.name,
        ) from e
    except ValidationError as e:
        raise DecodeError(f"{provider.name} route failed validation", provider=provider.name) from e
    if result.provider != provider.name:
        result = result.model_copy(update={"provider": provider.name})
    return result


class RouteRequestCoordinator:
    """Primary -> (at most one) secondary fallback for a single route computation."""

    def __init__(
        self,
        primary: RouteProvider,
        secondary: RouteProvider | None = None,
        *,
        timeout_s: float | None = None,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.routing_timeout_s)

    async def compute_route(
        self,
        request: RouteRequest,
        *,
        trace: RouteComputation | None = None,
    ) -> RouteResult:
        trace = trace or RouteComputation()
        t0 = time.perf_counter()

        trace.advance(CoordinatorState.CALLING_PRIMARY)
        try:
            result = await call_with_timeout(self.primary, request, timeout_s=self.timeout_s)
        except TruckRouteError as primary_err:
            trace.errors.append(primary_err)
            log_event(
                "route_primary_failed",
                provider=self.primary.name,
                reason_code=primary_err.reason_code,
                error=str(primary_err),
            )
        else:
            return self._succeed(trace, result, t0)

        primary_err = trace.errors[0]
        if self.secondary is None:
            trace.advance(CoordinatorState.FAILED)
            if isinstance(primary_err, NoRouteFound):
                raise primary_err
            raise ProviderExhausted(
                "Primary routing provider failed and no fallback is configured",
                errors=trace.errors,
            )

        trace.advance(CoordinatorState.CALLING_SECONDARY)
        incr("route_fallback")
        log_event("route_fallback", primary=self.primary.name, secondary=self.secondary.name)
        try:
            result = await call_with_timeout(self.secondary, request, timeout_s=self.timeout_s)
        except TruckRouteError as secondary_err:
            trace.errors.append(secondary_err)
            trace.advance(CoordinatorState.FAILED)
            log_event(
                "route_failed",
                primary_reason=primary_err.reason_code,
                secondary_reason=secondary_err.reason_code,
                duration_ms=round((time.perf_counter() - t0) * 1000, 2),
            )
            if all(isinstance(e, NoRouteFound) for e in trace.errors):
                raise NoRouteFound(
                    "No route between origin and destination for this vehicle",
                    details={"providers": [self.primary.name, self.secondary.name]},
                ) from secondary_err
            raise ProviderExhausted(
                "Both routing providers failed",
                errors=trace.errors,
            ) from secondary_err
        return self._succeed(trace, result, t0)

    def _succeed(self, trace: RouteComputation, result: RouteResult, t0: float) -> RouteResult:
        trace.advance(CoordinatorState.SUCCESS)
        trace.provider = result.provider
        log_event(
            "route_computed",
            provider=result.provider,
            route_id=result.route_id,
            point_count=len(result.coordinates),
            distance_m=round(result.distance_m, 1),
            duration_s=round(result.duration_s, 1),
            fallback_used=trace.history.count(CoordinatorState.CALLING_SECONDARY) > 0,
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return result

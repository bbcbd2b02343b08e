from __future__ import annotations

import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .errors import TruckRouteError
from .logging_utils import log_event
from .map_matching import MapboxMatchingClient, RouteGeometryAdapter
from .metrics_store import metrics_snapshot, reset_metrics
from .models import (
    CongestionSample,
    GuidancePath,
    MatchRequest,
    NearbyRestrictionRequest,
    PositionFix,
    Restriction,
    RestrictionQueryRequest,
    RestrictionSet,
    RouteRequest,
    RouteResponse,
    SessionCreateRequest,
    SessionRouteRequest,
    SessionStatus,
    TrafficRequest,
    VehicleProfile,
)
from .restriction_cache import clear_restriction_cache, restriction_cache_stats
from .restrictions import OverpassClient, RestrictionQueryService
from .route_coordinator import RouteRequestCoordinator
from .routing_osrm import OSRMClient
from .routing_tomtom import TomTomRoutingClient
from .session import NavigationSession, SessionRegistry
from .settings import settings
from .slots import Superseded
from .traffic_flow import HereFlowClient, TomTomFlowClient, TrafficFlowClassifier

_STATUS_BY_REASON: dict[str, int] = {
    "no_route_found": 404,
    "session_not_found": 404,
    "insufficient_geometry": 422,
    "no_matchings": 422,
}


@dataclass
class Services:
    coordinator: RouteRequestCoordinator
    adapter: RouteGeometryAdapter
    restrictions: RestrictionQueryService
    traffic: TrafficFlowClassifier
    sessions: SessionRegistry
    closables: list[Any] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.sessions.close_all()
        for client in self.closables:
            await client.aclose()


def build_services() -> Services:
    tomtom = TomTomRoutingClient(base_url=settings.tomtom_routing_url, api_key=settings.tomtom_api_key)
    osrm = OSRMClient(base_url=settings.osrm_base_url, profile=settings.osrm_profile) if settings.osrm_enabled else None
    mapbox = MapboxMatchingClient(
        base_url=settings.mapbox_matching_url,
        access_token=settings.mapbox_access_token,
        profile=settings.mapbox_matching_profile,
    )
    overpass = OverpassClient(settings.overpass_url)
    tomtom_flow = TomTomFlowClient(settings.tomtom_flow_url, settings.tomtom_api_key)
    here_flow = HereFlowClient(settings.here_flow_url, settings.here_api_key, radius_m=settings.here_flow_radius_m)

    coordinator = RouteRequestCoordinator(tomtom, osrm)
    adapter = RouteGeometryAdapter(mapbox)
    restrictions = RestrictionQueryService(overpass)
    traffic = TrafficFlowClassifier(tomtom_flow, here_flow)
    return Services(
        coordinator=coordinator,
        adapter=adapter,
        restrictions=restrictions,
        traffic=traffic,
        sessions=SessionRegistry(
            coordinator=coordinator,
            adapter=adapter,
            restriction_service=restrictions,
            traffic=traffic,
        ),
        closables=[c for c in (tomtom, osrm, mapbox, overpass, tomtom_flow, here_flow) if c is not None],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.services = build_services()
    log_event("service_started", osrm_enabled=settings.osrm_enabled)
    yield
    await app.state.services.aclose()
    log_event("service_stopped")


app = FastAPI(title="Truck Route Compliance Service", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TruckRouteError)
async def truckroute_error_handler(request: Request, exc: TruckRouteError) -> JSONResponse:
    status = _STATUS_BY_REASON.get(exc.reason_code, 502)
    log_event(
        "request_failed",
        path=request.url.path,
        status_code=status,
        reason_code=exc.reason_code,
        error=str(exc),
    )
    return JSONResponse(status_code=status, content={"detail": exc.as_dict()})


def services(request: Request) -> Services:
    svc: Services | None = getattr(request.app.state, "services", None)
    if svc is None:
        raise HTTPException(status_code=503, detail="services not initialised")
    return svc


def route_coordinator(svc: Annotated[Services, Depends(services)]) -> RouteRequestCoordinator:
    return svc.coordinator


def geometry_adapter(svc: Annotated[Services, Depends(services)]) -> RouteGeometryAdapter:
    return svc.adapter


def restriction_service(svc: Annotated[Services, Depends(services)]) -> RestrictionQueryService:
    return svc.restrictions


def traffic_classifier(svc: Annotated[Services, Depends(services)]) -> TrafficFlowClassifier:
    return svc.traffic


def session_registry(svc: Annotated[Services, Depends(services)]) -> SessionRegistry:
    return svc.sessions


CoordinatorDep = Annotated[RouteRequestCoordinator, Depends(route_coordinator)]
AdapterDep = Annotated[RouteGeometryAdapter, Depends(geometry_adapter)]
RestrictionsDep = Annotated[RestrictionQueryService, Depends(restriction_service)]
TrafficDep = Annotated[TrafficFlowClassifier, Depends(traffic_classifier)]
RegistryDep = Annotated[SessionRegistry, Depends(session_registry)]


async def _superseded() -> None:
    raise HTTPException(status_code=409, detail="superseded by a newer request")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/route", response_model=RouteResponse)
async def compute_route(req: RouteRequest, coordinator: CoordinatorDep, adapter: AdapterDep) -> RouteResponse:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()

    route = await coordinator.compute_route(req)
    guidance = await adapter.adapt_or_degrade(route)
    warnings = [guidance.warning] if guidance.warning else []

    log_event(
        "route_request",
        request_id=request_id,
        origin=req.origin.model_dump(),
        destination=req.destination.model_dump(),
        provider=route.provider,
        degraded_geometry=guidance.degraded,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return RouteResponse(route=route, guidance=guidance, warnings=warnings)


@app.post("/match", response_model=GuidancePath)
async def match_route(req: MatchRequest, adapter: AdapterDep) -> GuidancePath:
    return await adapter.adapt_or_degrade(req.route)


@app.post("/restrictions", response_model=RestrictionSet)
async def load_restrictions(req: RestrictionQueryRequest, service: RestrictionsDep) -> RestrictionSet:
    return await service.load_restrictions(req.route, req.vehicle)


@app.post("/restrictions/nearby", response_model=list[Restriction])
async def restrictions_nearby(req: NearbyRestrictionRequest, service: RestrictionsDep) -> list[Restriction]:
    return await service.load_restrictions_nearby(req.coordinate.as_tuple(), radius_m=req.radius_m)


@app.post("/traffic", response_model=CongestionSample)
async def classify_traffic(req: TrafficRequest, classifier: TrafficDep) -> CongestionSample:
    return await classifier.classify(req.coordinate.as_tuple())


@app.post("/sessions", response_model=SessionStatus, status_code=201)
async def create_session(req: SessionCreateRequest, registry: RegistryDep) -> SessionStatus:
    return registry.create(req.vehicle).status()


def _session(registry: SessionRegistry, session_id: str) -> NavigationSession:
    return registry.get(session_id)


@app.get("/sessions/{session_id}", response_model=SessionStatus)
async def get_session(session_id: str, registry: RegistryDep) -> SessionStatus:
    return _session(registry, session_id).status()


@app.post("/sessions/{session_id}/route", response_model=SessionStatus)
async def session_route(session_id: str, req: SessionRouteRequest, registry: RegistryDep) -> SessionStatus:
    session = _session(registry, session_id)
    request = RouteRequest(
        origin=req.origin,
        destination=req.destination,
        vehicle=session.profile,
        preferences=req.preferences,
    )
    try:
        await session.compute_and_activate(request)
    except Superseded:
        await _superseded()
    return session.status()


@app.post("/sessions/{session_id}/position", response_model=SessionStatus)
async def session_position(session_id: str, fix: PositionFix, registry: RegistryDep) -> SessionStatus:
    session = _session(registry, session_id)
    session.update_position(fix)
    return session.status()


@app.put("/sessions/{session_id}/profile", response_model=SessionStatus)
async def session_profile(session_id: str, profile: VehicleProfile, registry: RegistryDep) -> SessionStatus:
    session = _session(registry, session_id)
    try:
        await session.update_profile(profile)
    except Superseded:
        await _superseded()
    return session.status()


@app.post("/sessions/{session_id}/advisory/dismiss", response_model=SessionStatus)
async def session_dismiss(session_id: str, registry: RegistryDep, restriction_id: str | None = None) -> SessionStatus:
    session = _session(registry, session_id)
    if not session.dismiss(restriction_id):
        raise HTTPException(status_code=409, detail="no active advisory to dismiss")
    return session.status()


@app.get("/sessions/{session_id}/events")
async def session_events(session_id: str, registry: RegistryDep) -> StreamingResponse:
    session = _session(registry, session_id)

    async def ndjson() -> AsyncIterator[str]:
        async for event in session.events.stream():
            yield event.model_dump_json() + "\n"

    return StreamingResponse(ndjson(), media_type="application/x-ndjson")


@app.delete("/sessions/{session_id}")
async def close_session(session_id: str, registry: RegistryDep) -> dict[str, str]:
    await registry.close(session_id)
    return {"status": "closed", "session_id": session_id}


@app.get("/metrics")
async def get_metrics() -> dict[str, object]:
    return metrics_snapshot()


@app.delete("/metrics")
async def clear_metrics() -> dict[str, str]:
    reset_metrics()
    return {"status": "reset"}


@app.get("/cache/stats")
async def cache_stats() -> dict[str, int]:
    return restriction_cache_stats()


@app.delete("/cache")
async def clear_cache() -> dict[str, int]:
    return {"cleared": clear_restriction_cache()}

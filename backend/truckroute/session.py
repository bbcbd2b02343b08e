"""Navigation session: the explicit state object shared by the monitor and the traffic refresher."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator

from .errors import SessionNotFound
from .hazard_monitor import HazardMonitor, MonitorSnapshot
from .logging_utils import log_event
from .map_matching import RouteGeometryAdapter
from .models import (
    CongestionSample,
    Coordinate,
    GuidancePath,
    HazardAdvisory,
    PositionFix,
    RestrictionSet,
    RouteRequest,
    RouteResult,
    SessionEventPayload,
    SessionStatus,
    VehicleProfile,
)
from .restrictions import RestrictionQueryService
from .route_coordinator import RouteRequestCoordinator
from .slots import RequestSlot, Superseded
from .traffic_flow import TrafficFlowClassifier, TrafficRefresher

EVENT_KINDS = frozenset(
    {"advisory_raised", "advisory_cleared", "congestion_updated", "route_activated", "session_closed"}
)


class SessionEvents:
    """Fan-out of session events to subscriber queues."""

    def __init__(self, session_id: str, *, max_queue: int = 100) -> None:
        self.session_id = session_id
        self.max_queue = max_queue
        self._subscribers: list[asyncio.Queue[SessionEventPayload | None]] = []
        self._closed = False
        self.published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[SessionEventPayload | None]:
        queue: asyncio.Queue[SessionEventPayload | None] = asyncio.Queue(maxsize=self.max_queue)
        if self._closed:
            queue.put_nowait(None)
        else:
            self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[SessionEventPayload | None]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: SessionEventPayload) -> None:
        if self._closed:
            return
        if event.kind not in EVENT_KINDS:
            raise ValueError(f"unknown session event kind: {event.kind}")
        self.published += 1
        for queue in self._subscribers:
            if queue.full():
                # Slow consumer: drop its oldest event.
                queue.get_nowait()
            queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(None)
        self._subscribers.clear()

    async def stream(self) -> AsyncIterator[SessionEventPayload]:
        queue = self.subscribe()
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                yield item
        finally:
            self.unsubscribe(queue)


class NavigationSession:
    def __init__(
        self,
        *,
        coordinator: RouteRequestCoordinator,
        adapter: RouteGeometryAdapter,
        restriction_service: RestrictionQueryService,
        traffic: TrafficFlowClassifier | None = None,
        profile: VehicleProfile | None = None,
        session_id: str | None = None,
        monitor: HazardMonitor | None = None,
        traffic_interval_s: float | None = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.coordinator = coordinator
        self.adapter = adapter
        self.restriction_service = restriction_service
        self.traffic = traffic

        self.profile = profile or VehicleProfile()
        self.route: RouteResult | None = None
        self.guidance: GuidancePath | None = None
        self.restrictions: RestrictionSet | None = None
        self.position: PositionFix | None = None
        self.congestion: CongestionSample | None = None
        self.advisory: HazardAdvisory | None = None
        self.closed = False

        self._dismissed: set[str] = set()
        self._snapshot: MonitorSnapshot | None = None
        self._activation = 0
        self.slots = {name: RequestSlot(name) for name in ("route", "adapt", "restrictions", "traffic")}
        self.events = SessionEvents(self.session_id)
        self.monitor = monitor or HazardMonitor(self)
        self.refresher = TrafficRefresher(self.refresh_traffic, interval_s=traffic_interval_s)

    # --- MonitorContext ---

    def monitor_snapshot(self) -> MonitorSnapshot | None:
        return self._snapshot

    @property
    def dismissed(self) -> frozenset[str]:
        return frozenset(self._dismissed)

    async def publish_advisory(self, advisory: HazardAdvisory | None) -> None:
        current = self.advisory
        if advisory is None:
            if current is not None:
                self._clear_advisory("passed")
            return
        if advisory.restriction.restriction_id in self._dismissed:
            return
        if current is not None and current.restriction.restriction_id == advisory.restriction.restriction_id:
            # Same restriction: refresh distance without re-raising.
            self.advisory = advisory.model_copy(update={"advisory_id": current.advisory_id})
            return
        self.advisory = advisory
        log_event(
            "advisory_raised",
            session_id=self.session_id,
            restriction_id=advisory.restriction.restriction_id,
            dimension=advisory.dimension,
            severity=advisory.severity,
            exceedance=advisory.exceedance,
            distance_ahead_m=advisory.distance_ahead_m,
        )
        self._emit("advisory_raised", advisory=advisory)

    # --- internals ---

    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionNotFound(f"Session {self.session_id} is closed")

    def _emit(self, kind: str, **fields: object) -> None:
        self.events.publish(SessionEventPayload(session_id=self.session_id, kind=kind, **fields))  # type: ignore[arg-type]

    def _clear_advisory(self, cause: str) -> None:
        advisory, self.advisory = self.advisory, None
        if advisory is None:
            return
        log_event(
            "advisory_cleared",
            session_id=self.session_id,
            restriction_id=advisory.restriction.restriction_id,
            cause=cause,
        )
        self._emit("advisory_cleared", advisory=advisory)

    def _check_activation(self, activation: int) -> None:
        if activation != self._activation or self.closed:
            raise Superseded("route activation superseded")

    # --- operations ---

    async def activate_route(self, route: RouteResult) -> GuidancePath:
        """Install ``route`` as the active route.

        Everything tied to the previous route (monitor, in-flight geometry and
        restriction calls, restriction set, advisory) is torn down before the
        new snapshot goes in.
        """
        self._ensure_open()
        self._activation += 1
        activation = self._activation

        await self.monitor.stop()
        await self.slots["adapt"].cancel()
        await self.slots["restrictions"].cancel()
        self._snapshot = None
        self.restrictions = None
        self.guidance = None
        self._dismissed.clear()
        self._clear_advisory("route_replaced")
        previous = self.route
        if previous is not None and previous.route_id != route.route_id:
            self.restriction_service.forget_route(previous.route_id)
        self.route = route

        guidance = await self.slots["adapt"].run(self.adapter.adapt_or_degrade(route))
        self._check_activation(activation)
        self.guidance = guidance

        profile = self.profile
        while True:
            restrictions = await self.slots["restrictions"].run(
                self.restriction_service.load_restrictions(route, profile)
            )
            self._check_activation(activation)
            if self.profile == profile:
                break
            # Profile changed while loading; the set must match the current vehicle.
            log_event("activation_profile_changed", session_id=self.session_id, route_id=route.route_id)
            profile = self.profile
        self.restrictions = restrictions
        self._snapshot = MonitorSnapshot.build(route, restrictions, profile)

        log_event(
            "route_activated",
            session_id=self.session_id,
            route_id=route.route_id,
            provider=route.provider,
            degraded_geometry=guidance.degraded,
            restriction_count=len(restrictions.restrictions),
            routing_only=restrictions.routing_only,
        )
        self._emit("route_activated", route_id=route.route_id)

        self.monitor.start()
        self.monitor.request_evaluation()
        if self.traffic is not None:
            self.refresher.start()
        return guidance

    async def compute_and_activate(self, request: RouteRequest) -> GuidancePath:
        self._ensure_open()
        request = request.model_copy(update={"vehicle": self.profile})
        route = await self.slots["route"].run(self.coordinator.compute_route(request))
        return await self.activate_route(route)

    def update_position(self, fix: PositionFix) -> None:
        self._ensure_open()
        self.position = fix
        self.monitor.notify_position(fix)

    async def update_profile(self, profile: VehicleProfile) -> None:
        self._ensure_open()
        if profile == self.profile:
            return
        self.profile = profile
        self._clear_advisory("profile_changed")
        log_event("profile_changed", session_id=self.session_id, fingerprint=profile.fingerprint())

        route = self.route
        if route is None or self.restrictions is None:
            return
        activation = self._activation
        # Evaluate the new profile against the current set right away,
        # then swap in the set keyed by the new profile.
        self._snapshot = MonitorSnapshot.build(route, self.restrictions, profile)
        self.monitor.request_evaluation()

        restrictions = await self.slots["restrictions"].run(
            self.restriction_service.load_restrictions(route, profile)
        )
        self._check_activation(activation)
        if profile != self.profile:
            raise Superseded("profile update superseded")
        self.restrictions = restrictions
        self._snapshot = MonitorSnapshot.build(route, restrictions, profile)
        self.monitor.request_evaluation()

    def dismiss(self, restriction_id: str | None = None) -> bool:
        self._ensure_open()
        if restriction_id is None:
            if self.advisory is None:
                return False
            restriction_id = self.advisory.restriction.restriction_id
        self._dismissed.add(restriction_id)
        log_event("advisory_dismissed", session_id=self.session_id, restriction_id=restriction_id)
        if self.advisory is not None and self.advisory.restriction.restriction_id == restriction_id:
            self._clear_advisory("dismissed")
        return True

    def traffic_coordinate(self) -> Coordinate | None:
        if self.position is not None:
            return self.position.as_tuple()
        if self.route is not None and self.route.coordinates:
            return self.route.coordinates[0]
        return None

    async def refresh_traffic(self) -> CongestionSample | None:
        if self.traffic is None or self.closed:
            return None
        coordinate = self.traffic_coordinate()
        if coordinate is None:
            return None
        try:
            sample = await self.slots["traffic"].run(self.traffic.classify(coordinate))
        except Superseded:
            return None
        self.congestion = sample
        self._emit("congestion_updated", congestion=sample)
        return sample

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.monitor.stop()
        await self.refresher.stop()
        for slot in self.slots.values():
            await slot.cancel()
        self._snapshot = None
        self.events.publish(SessionEventPayload(session_id=self.session_id, kind="session_closed"))
        self.events.close()
        log_event("session_closed", session_id=self.session_id)

    def status(self) -> SessionStatus:
        return SessionStatus(
            session_id=self.session_id,
            vehicle=self.profile,
            route=self.route,
            guidance=self.guidance,
            restriction_count=len(self.restrictions.restrictions) if self.restrictions else 0,
            routing_only=bool(self.restrictions and self.restrictions.routing_only),
            advisory=self.advisory,
            congestion=self.congestion,
            monitoring=self.monitor.running,
            closed=self.closed,
        )


class SessionRegistry:
    def __init__(
        self,
        *,
        coordinator: RouteRequestCoordinator,
        adapter: RouteGeometryAdapter,
        restriction_service: RestrictionQueryService,
        traffic: TrafficFlowClassifier | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.adapter = adapter
        self.restriction_service = restriction_service
        self.traffic = traffic
        self._sessions: dict[str, NavigationSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, profile: VehicleProfile | None = None) -> NavigationSession:
        session = NavigationSession(
            coordinator=self.coordinator,
            adapter=self.adapter,
            restriction_service=self.restriction_service,
            traffic=self.traffic,
            profile=profile,
        )
        self._sessions[session.session_id] = session
        log_event("session_created", session_id=session.session_id)
        return session

    def get(self, session_id: str) -> NavigationSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    async def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        await session.close()

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()

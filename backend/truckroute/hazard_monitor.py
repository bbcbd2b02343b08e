"""Hazard Monitor: periodic comparison of position + vehicle profile against the route's restrictions.

Evaluation is a pure function of an immutable :class:`MonitorSnapshot`; the
periodic task only decides *when* to evaluate (whichever comes first of the
time interval or the distance travelled) and hands the result to its context.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from typing import Protocol

from .advisory_text import advisory_message, distance_text, title_for
from .geo import cumulative_distances_m, distance_m, nearest_segment, offset_along
from .logging_utils import log_event
from .metrics_store import incr
from .models import (
    Dimension,
    HazardAdvisory,
    PositionFix,
    Restriction,
    RestrictionSet,
    RouteResult,
    Severity,
    VehicleProfile,
)
from .settings import settings

MODERATE_OVERSHOOT_RATIO = 0.05


@dataclass(frozen=True)
class SafetyMargins:
    height_m: float = 0.10
    width_m: float = 0.05
    length_m: float = 0.10
    weight_t: float = 0.10

    @classmethod
    def from_settings(cls) -> "SafetyMargins":
        return cls(
            height_m=settings.safety_margin_height_m,
            width_m=settings.safety_margin_width_m,
            length_m=settings.safety_margin_length_m,
            weight_t=settings.safety_margin_weight_t,
        )

    def for_dimension(self, dimension: Dimension) -> float:
        return {
            "height": self.height_m,
            "width": self.width_m,
            "length": self.length_m,
            "weight": self.weight_t,
        }[dimension]


@dataclass(frozen=True)
class MonitorSnapshot:
    """Route, restrictions and profile that one tick evaluates against. Replaced, never mutated."""

    route: RouteResult
    restrictions: RestrictionSet
    profile: VehicleProfile
    cumulative_m: tuple[float, ...] = field(default=())

    @classmethod
    def build(cls, route: RouteResult, restrictions: RestrictionSet, profile: VehicleProfile) -> "MonitorSnapshot":
        if restrictions.route_id != route.route_id:
            raise ValueError(
                f"restriction set belongs to route {restrictions.route_id}, not {route.route_id}"
            )
        return cls(
            route=route,
            restrictions=restrictions,
            profile=profile,
            cumulative_m=tuple(cumulative_distances_m(route.coordinates)),
        )

    def offsets(self) -> tuple[float, ...]:
        return self.cumulative_m or tuple(cumulative_distances_m(self.route.coordinates))


def exceedance(profile_value: float, limit: float, margin: float) -> float:
    """profile - (limit - margin). Positive means conflict."""
    return profile_value - (limit - margin)


def classify_severity(profile_value: float, limit: float) -> Severity:
    overshoot = profile_value - limit
    if overshoot <= 0:
        return "marginal"
    if overshoot <= limit * MODERATE_OVERSHOOT_RATIO:
        return "moderate"
    return "severe"


def locate(snapshot: MonitorSnapshot, position: PositionFix, *, start_index: int = 0) -> tuple[int, float]:
    """(route segment index, along-route offset) for ``position``.

    The offset is measured at the position projected onto its nearest segment.

    Searches forward from ``start_index`` so a looping route cannot snap the
    vehicle back to an earlier pass over the same spot.
    """
    coords = snapshot.route.coordinates
    if not coords:
        return 0, 0.0
    idx, fraction, _ = nearest_segment(coords, position.as_tuple(), start=start_index)
    return idx, offset_along(snapshot.offsets(), idx, fraction)


def _restriction_offset(snapshot: MonitorSnapshot, restriction: Restriction) -> float:
    if restriction.route_offset_m is not None:
        return restriction.route_offset_m
    idx, fraction, _ = nearest_segment(snapshot.route.coordinates, restriction.location)
    return offset_along(snapshot.offsets(), idx, fraction)


def evaluate(
    snapshot: MonitorSnapshot,
    position: PositionFix,
    dismissed: Collection[str] = (),
    *,
    progress_index: int = 0,
    margins: SafetyMargins | None = None,
    advisory_distance_m: float | None = None,
    imperial: bool | None = None,
) -> HazardAdvisory | None:
    """Pick at most one conflict ahead of ``position`` within the advisory window.

    Nearest ahead wins; equally near conflicts go to the larger exceedance.
    Dismissed restrictions and anything already passed (distance ahead <= 0)
    are ignored.
    """
    if not snapshot.route.coordinates or not snapshot.restrictions.restrictions:
        return None
    margins = margins or SafetyMargins.from_settings()
    window_m = float(advisory_distance_m if advisory_distance_m is not None else settings.hazard_advisory_distance_m)
    imperial = settings.use_imperial_units if imperial is None else imperial

    _, vehicle_offset = locate(snapshot, position, start_index=progress_index)

    best: tuple[float, float, Restriction] | None = None
    for restriction in snapshot.restrictions.restrictions:
        if restriction.restriction_id in dismissed:
            continue
        ahead = _restriction_offset(snapshot, restriction) - vehicle_offset
        if ahead <= 0 or ahead > window_m:
            continue
        dimension = restriction.dimension
        value = snapshot.profile.dimension(dimension)
        over = exceedance(value, restriction.limit, margins.for_dimension(dimension))
        if over <= 0:
            continue
        if best is None or (ahead, -over) < (best[0], -best[1]):
            best = (ahead, over, restriction)

    if best is None:
        return None

    ahead, over, restriction = best
    dimension = restriction.dimension
    value = snapshot.profile.dimension(dimension)
    severity = classify_severity(value, restriction.limit)
    return HazardAdvisory(
        restriction=restriction,
        dimension=dimension,
        vehicle_value=value,
        exceedance=round(over, 4),
        severity=severity,
        distance_ahead_m=round(ahead, 1),
        title=title_for(dimension, severity),
        message=advisory_message(restriction, value, imperial=imperial),
        distance_text=distance_text(ahead, imperial=imperial),
    )


class MonitorThrottle:
    """Dual trigger: elapsed time >= interval or distance travelled >= threshold."""

    def __init__(
        self,
        *,
        interval_s: float,
        distance_m: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval_s = float(interval_s)
        self.distance_m = float(distance_m)
        self._clock = clock
        self._last_eval_at: float | None = None
        self._last_fix: PositionFix | None = None
        self._travelled_m = 0.0
        self._forced = False

    @property
    def travelled_m(self) -> float:
        return self._travelled_m

    def observe(self, fix: PositionFix) -> None:
        if self._last_fix is not None:
            self._travelled_m += distance_m(self._last_fix.as_tuple(), fix.as_tuple())
        self._last_fix = fix

    def force(self) -> None:
        self._forced = True

    def remaining_s(self) -> float:
        if self._forced or self._last_eval_at is None:
            return 0.0
        return max(0.0, self.interval_s - (self._clock() - self._last_eval_at))

    def due(self) -> bool:
        if self._forced or self._last_eval_at is None:
            return True
        if self._travelled_m >= self.distance_m:
            return True
        return (self._clock() - self._last_eval_at) >= self.interval_s

    def mark_evaluated(self) -> None:
        self._last_eval_at = self._clock()
        self._travelled_m = 0.0
        self._forced = False


class MonitorContext(Protocol):
    """What the monitor reads from and reports to (normally a NavigationSession)."""

    def monitor_snapshot(self) -> MonitorSnapshot | None: ...

    @property
    def position(self) -> PositionFix | None: ...

    @property
    def dismissed(self) -> frozenset[str]: ...

    async def publish_advisory(self, advisory: HazardAdvisory | None) -> None: ...


class HazardMonitor:
    def __init__(
        self,
        context: MonitorContext,
        *,
        interval_s: float | None = None,
        distance_trigger_m: float | None = None,
        advisory_distance_m: float | None = None,
        margins: SafetyMargins | None = None,
        enabled: bool | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.context = context
        self.throttle = MonitorThrottle(
            interval_s=interval_s if interval_s is not None else settings.hazard_interval_s,
            distance_m=distance_trigger_m if distance_trigger_m is not None else settings.hazard_distance_trigger_m,
            clock=clock,
        )
        self.advisory_distance_m = float(
            advisory_distance_m if advisory_distance_m is not None else settings.hazard_advisory_distance_m
        )
        self.margins = margins or SafetyMargins.from_settings()
        self.enabled = settings.hazard_warnings_enabled if enabled is None else bool(enabled)
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._route_id: str | None = None
        self._progress_index = 0
        self.evaluations = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if not self.enabled:
            log_event("hazard_monitor_disabled")
            return False
        if self.running:
            return True
        self.throttle.force()
        self._task = asyncio.create_task(self._run(), name="hazard-monitor")
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def notify_position(self, fix: PositionFix) -> None:
        self.throttle.observe(fix)
        if self.throttle.due():
            self._wake.set()

    def request_evaluation(self) -> None:
        """Evaluate on the next loop turn regardless of the throttle (profile change, new route)."""
        self.throttle.force()
        self._wake.set()

    async def tick(self) -> bool:
        """Evaluate if the throttle says so. Returns whether an evaluation ran."""
        if not self.throttle.due():
            return False
        self.throttle.mark_evaluated()

        snapshot = self.context.monitor_snapshot()
        position = self.context.position
        if snapshot is None or position is None:
            return False

        if snapshot.route.route_id != self._route_id:
            self._route_id = snapshot.route.route_id
            self._progress_index = 0
        self._progress_index, _ = locate(snapshot, position, start_index=self._progress_index)

        advisory = evaluate(
            snapshot,
            position,
            self.context.dismissed,
            progress_index=self._progress_index,
            margins=self.margins,
            advisory_distance_m=self.advisory_distance_m,
        )
        self.evaluations += 1
        incr("hazard_evaluations")
        await self.context.publish_advisory(advisory)
        return True

    async def _run(self) -> None:
        try:
            while True:
                timeout = self.throttle.remaining_s()
                if timeout > 0 and not self._wake.is_set():
                    try:
                        await asyncio.wait_for(self._wake.wait(), timeout=timeout)
                    except TimeoutError:
                        pass
                self._wake.clear()
                try:
                    await self.tick()
                except Exception as e:
                    log_event("hazard_tick_failed", level=logging.ERROR, error=repr(e))
        except asyncio.CancelledError:
            log_event("hazard_monitor_stopped", evaluations=self.evaluations)
            raise

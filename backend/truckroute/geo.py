from __future__ import annotations

import math
from collections.abc import Sequence

from .models import Coordinate

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def distance_m(a: Coordinate, b: Coordinate) -> float:
    return haversine_m(a[0], a[1], b[0], b[1])


def cumulative_distances_m(points: Sequence[Coordinate]) -> list[float]:
    """Along-route offset of every vertex, starting at 0."""
    out: list[float] = []
    total = 0.0
    prev: Coordinate | None = None
    for pt in points:
        if prev is not None:
            total += distance_m(prev, pt)
        out.append(total)
        prev = pt
    return out


def sample_by_arc_length(points: Sequence[Coordinate], interval_m: float) -> list[Coordinate]:
    """Pick a vertex each time the accumulated distance reaches ``interval_m``.

    The first and last vertices are always included.
    """
    if len(points) <= 1:
        return list(points)

    sampled: list[Coordinate] = [points[0]]
    accumulated = 0.0
    for i in range(1, len(points)):
        accumulated += distance_m(points[i - 1], points[i])
        if accumulated >= interval_m:
            sampled.append(points[i])
            accumulated = 0.0

    if sampled[-1] != points[-1]:
        sampled.append(points[-1])
    return sampled


def project_onto_segment(a: Coordinate, b: Coordinate, target: Coordinate) -> tuple[float, float]:
    """(fraction along a->b, distance_m) of the point on segment a-b closest to ``target``.

    Projects in a local equirectangular plane around ``a``.
    """
    kx = math.cos(math.radians(a[0]))
    bx, by = (b[1] - a[1]) * kx, b[0] - a[0]
    px, py = (target[1] - a[1]) * kx, target[0] - a[0]
    seg2 = bx * bx + by * by
    t = 0.0 if seg2 <= 0.0 else max(0.0, min(1.0, (px * bx + py * by) / seg2))
    if t <= 0.0:
        closest = a
    elif t >= 1.0:
        closest = b
    else:
        closest = (a[0] + t * (b[0] - a[0]), a[1] + t * (b[1] - a[1]))
    return t, distance_m(closest, target)


def nearest_segment(
    points: Sequence[Coordinate],
    target: Coordinate,
    *,
    start: int = 0,
) -> tuple[int, float, float]:
    """Return (segment index, fraction, distance_m) of the closest point on the polyline.

    Segment ``i`` joins ``points[i]`` and ``points[i + 1]``; only segments from
    ``start`` on are searched. Ties go to the earlier segment.
    """
    if not points:
        raise ValueError("points must not be empty")
    if len(points) == 1:
        return 0, 0.0, distance_m(points[0], target)

    lo = max(0, min(start, len(points) - 2))
    best_idx, best_t, best_d = lo, 0.0, math.inf
    for idx in range(lo, len(points) - 1):
        t, d = project_onto_segment(points[idx], points[idx + 1], target)
        if d < best_d:
            best_idx, best_t, best_d = idx, t, d
    return best_idx, best_t, best_d


def offset_along(cumulative_m: Sequence[float], segment: int, fraction: float) -> float:
    """Along-route offset of a point ``fraction`` of the way through ``segment``."""
    if not cumulative_m:
        return 0.0
    if segment + 1 >= len(cumulative_m):
        return cumulative_m[-1]
    start = cumulative_m[segment]
    return start + fraction * (cumulative_m[segment + 1] - start)

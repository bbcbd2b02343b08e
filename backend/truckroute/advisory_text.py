from __future__ import annotations

from .models import Dimension, Restriction, Severity
from .units import format_feet_inches, format_pounds, meters_to_feet, tonnes_to_pounds

_FEET_PER_MILE = 5280.0
_NOW_THRESHOLD_FT = 300.0

TITLES: dict[Dimension, str] = {
    "height": "Low clearance ahead",
    "weight": "Weight limit ahead",
    "width": "Width restriction ahead",
    "length": "Length restriction ahead",
}

MARGINAL_CHECKS: dict[Dimension, str] = {
    "height": "check clearance",
    "weight": "check gross weight",
    "width": "check width",
    "length": "check length",
}

_LIMIT_LABELS: dict[Dimension, tuple[str, str]] = {
    "height": ("Posted clearance", "Vehicle height"),
    "weight": ("Posted weight limit", "Vehicle weight"),
    "width": ("Posted width limit", "Vehicle width"),
    "length": ("Posted length limit", "Vehicle length"),
}


def title_for(dimension: Dimension, severity: Severity) -> str:
    # Severity changes emphasis only; "check" framing for marginal cases.
    base = TITLES[dimension]
    if severity == "marginal":
        return f"{base}: {MARGINAL_CHECKS[dimension]}"
    return base


def format_value(dimension: Dimension, value: float, *, imperial: bool) -> str:
    if dimension == "weight":
        return format_pounds(value) if imperial else f"{value:.1f} t"
    if not imperial:
        return f"{value:.2f} m"
    if dimension == "length":
        return f"{meters_to_feet(value):.1f}'"
    return format_feet_inches(value)


def _difference_text(dimension: Dimension, vehicle_value: float, limit: float, *, imperial: bool) -> str:
    diff = abs(vehicle_value - limit)
    if dimension == "weight":
        return f"{tonnes_to_pounds(diff):,.0f} lbs" if imperial else f"{diff:.1f} t"
    if not imperial:
        return f"{diff * 100:.0f} cm"
    if dimension == "length":
        return f"{meters_to_feet(diff):.1f}'"
    return f"{meters_to_feet(diff) * 12:.0f}\""


def advisory_message(restriction: Restriction, vehicle_value: float, *, imperial: bool = True) -> str:
    dimension = restriction.dimension
    limit_label, vehicle_label = _LIMIT_LABELS[dimension]
    lines = [
        f"{limit_label}: {format_value(dimension, restriction.limit, imperial=imperial)}",
        f"{vehicle_label}: {format_value(dimension, vehicle_value, imperial=imperial)}",
    ]
    diff = _difference_text(dimension, vehicle_value, restriction.limit, imperial=imperial)
    if vehicle_value > restriction.limit:
        lines.append(f"Note: {diff} over the posted limit")
    else:
        lines.append(f"Within the posted limit by {diff}, inside your safety margin")
    if restriction.road_name:
        lines.append(f"On {restriction.road_name}")
    return "\n".join(lines)


def distance_text(distance_m: float, *, imperial: bool = True) -> str:
    if imperial:
        feet = meters_to_feet(max(0.0, distance_m))
        if feet < _NOW_THRESHOLD_FT:
            return "now"
        if feet < _FEET_PER_MILE:
            return f"in {int(feet)} ft"
        return f"in {feet / _FEET_PER_MILE:.1f} mi"

    if distance_m < 100.0:
        return "now"
    if distance_m < 1000.0:
        return f"in {int(round(distance_m, -1))} m"
    return f"in {distance_m / 1000.0:.1f} km"

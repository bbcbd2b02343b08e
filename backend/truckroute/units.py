"""Imperial/metric normalisation for vehicle and restriction measurements.

Canonical units are metres for lengths and metric tonnes for weights.
Restriction tags arrive as free text ("3.5", "11'6\"", "13 ft 6 in",
"22000 lbs", "7.5 st"), so parsing lives here too.
"""

from __future__ import annotations

import re
from typing import Final

METERS_PER_FOOT: Final[float] = 0.3048
KG_PER_POUND: Final[float] = 0.45359237
TONNES_PER_SHORT_TON: Final[float] = 0.90718474

_NON_VALUES: Final[frozenset[str]] = frozenset(
    {"", "none", "no", "default", "below_default", "unsigned", "unknown", "fixme", "physical"}
)

_NUMBER = r"(\d+(?:[.,]\d+)*)"
_FEET_INCHES_RE = re.compile(
    rf"^{_NUMBER}\s*(?:'|ft|feet|foot)\s*(?:{_NUMBER}\s*(?:\"|''|in|inch|inches)?)?$"
)
_INCHES_ONLY_RE = re.compile(rf"^{_NUMBER}\s*(?:\"|in|inch|inches)$")
_METRIC_LENGTH_RE = re.compile(rf"^{_NUMBER}\s*(m|meters?|metres?|cm)?$")
_WEIGHT_RE = re.compile(rf"^{_NUMBER}\s*(t|tonnes?|tons?|lbs?|pounds?|st|short\s+tons?|kg)?$")


def feet_to_meters(feet: float, inches: float = 0.0) -> float:
    return (float(feet) + float(inches) / 12.0) * METERS_PER_FOOT


def meters_to_feet(meters: float) -> float:
    return float(meters) / METERS_PER_FOOT


def pounds_to_tonnes(pounds: float) -> float:
    return float(pounds) * KG_PER_POUND / 1000.0


def tonnes_to_pounds(tonnes: float) -> float:
    return float(tonnes) * 1000.0 / KG_PER_POUND


def short_tons_to_tonnes(short_tons: float) -> float:
    return float(short_tons) * TONNES_PER_SHORT_TON


def kg_to_tonnes(kg: float) -> float:
    return float(kg) / 1000.0


def _to_float(text: str | None) -> float | None:
    if text is None:
        return None
    raw = text.strip()
    # "80,000" is a thousands separator, "3,5" a decimal comma.
    if re.fullmatch(r"\d{1,3}(,\d{3})+(\.\d+)?", raw):
        raw = raw.replace(",", "")
    else:
        raw = raw.replace(",", ".")
    try:
        return float(raw)
    except ValueError:
        return None


def _clean(raw: str) -> str:
    text = str(raw).strip().lower()
    for src, dst in (("′", "'"), ("’", "'"), ("″", '"'), ("”", '"')):
        text = text.replace(src, dst)
    # Conditional restrictions ("3.5 @ (22:00-06:00)") keep the leading value only.
    return text.split("@", 1)[0].split(";", 1)[0].strip()


def parse_length(raw: str | None) -> float | None:
    """Parse a height/width/length tag into metres, or None when unusable."""
    if raw is None:
        return None
    text = _clean(raw)
    if text in _NON_VALUES:
        return None

    m = _FEET_INCHES_RE.match(text)
    if m:
        feet = _to_float(m.group(1))
        inches = _to_float(m.group(2)) if m.group(2) else 0.0
        if feet is None or inches is None:
            return None
        value = feet_to_meters(feet, inches)
        return value if value > 0 else None

    m = _INCHES_ONLY_RE.match(text)
    if m:
        inches = _to_float(m.group(1))
        return feet_to_meters(0.0, inches) if inches else None

    m = _METRIC_LENGTH_RE.match(text)
    if m:
        value = _to_float(m.group(1))
        if value is None or value <= 0:
            return None
        if m.group(2) == "cm":
            value /= 100.0
        return value
    return None


def parse_weight(raw: str | None) -> float | None:
    """Parse a weight tag into metric tonnes, or None when unusable."""
    if raw is None:
        return None
    text = _clean(raw)
    if text in _NON_VALUES:
        return None

    m = _WEIGHT_RE.match(text)
    if not m:
        return None
    value = _to_float(m.group(1))
    if value is None or value <= 0:
        return None
    unit = (m.group(2) or "t").replace(" ", "")
    if unit.startswith("lb") or unit.startswith("pound"):
        return pounds_to_tonnes(value)
    if unit == "st" or unit.startswith("short"):
        return short_tons_to_tonnes(value)
    if unit == "kg":
        return kg_to_tonnes(value)
    return value


def normalize_restriction_value(restriction_type: str, raw: str | None) -> float | None:
    if restriction_type == "maxweight":
        return parse_weight(raw)
    return parse_length(raw)


def format_feet_inches(meters: float) -> str:
    total_inches = int(round(meters_to_feet(meters) * 12.0))
    feet, inches = divmod(total_inches, 12)
    return f"{feet}'{inches}\""


def format_pounds(tonnes: float) -> str:
    return f"{tonnes_to_pounds(tonnes):,.0f} lbs"

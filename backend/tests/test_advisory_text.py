from __future__ import annotations

import pytest

from truckroute.advisory_text import advisory_message, distance_text, format_value, title_for
from truckroute.models import Restriction


def _restriction(rtype: str, limit: float, road_name: str | None = None) -> Restriction:
    return Restriction(
        restriction_id=f"osm:way/1:{rtype}",
        type=rtype,  # type: ignore[arg-type]
        limit=limit,
        location=(52.0, -1.5),
        road_name=road_name,
    )


@pytest.mark.parametrize(
    ("distance_m", "expected"),
    [
        (50.0, "now"),
        (500.0, "in 1640 ft"),
        (3218.7, "in 2.0 mi"),
    ],
)
def test_imperial_distance_text(distance_m: float, expected: str) -> None:
    assert distance_text(distance_m, imperial=True) == expected


@pytest.mark.parametrize(
    ("distance_m", "expected"),
    [
        (40.0, "now"),
        (444.0, "in 440 m"),
        (2400.0, "in 2.4 km"),
    ],
)
def test_metric_distance_text(distance_m: float, expected: str) -> None:
    assert distance_text(distance_m, imperial=False) == expected


def test_height_message_reads_as_information() -> None:
    text = advisory_message(_restriction("maxheight", 4.0, "Rail Bridge"), 4.11, imperial=True)
    lines = text.splitlines()
    assert lines[0] == "Posted clearance: 13'1\""
    assert lines[1] == "Vehicle height: 13'6\""
    assert lines[2].startswith("Note: 4\" over")
    assert lines[-1] == "On Rail Bridge"
    assert "!" not in text


def test_message_inside_margin_says_so() -> None:
    text = advisory_message(_restriction("maxheight", 4.15), 4.11, imperial=False)
    assert "Within the posted limit by 4 cm" in text


def test_weight_values_in_both_unit_systems() -> None:
    assert format_value("weight", 36.287, imperial=True) == "80,000 lbs"
    assert format_value("weight", 36.287, imperial=False) == "36.3 t"
    assert format_value("length", 16.15, imperial=True) == "53.0'"


def test_titles_are_calm() -> None:
    assert title_for("height", "severe") == "Low clearance ahead"
    assert title_for("height", "marginal") == "Low clearance ahead: check clearance"
    assert title_for("weight", "marginal") == "Weight limit ahead: check gross weight"
    assert title_for("width", "marginal") == "Width restriction ahead: check width"
    assert "clearance" not in title_for("length", "marginal")
    for dimension in ("height", "weight", "width", "length"):
        assert title_for(dimension, "severe").upper() != title_for(dimension, "severe")

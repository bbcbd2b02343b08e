from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from truckroute.errors import NetworkError, ProviderExhausted
from truckroute.traffic_flow import (
    HereFlowClient,
    RawFlow,
    TomTomFlowClient,
    TrafficFlowClassifier,
    TrafficRefresher,
    level_from_jam_factor,
    level_from_ratio,
    to_sample,
)


@pytest.mark.parametrize(
    ("ratio", "level"),
    [(1.0, 0), (0.80, 0), (0.75, 0), (0.60, 1), (0.50, 1), (0.40, 2), (0.25, 2), (0.10, 3), (0.0, 3)],
)
def test_ratio_thresholds(ratio: float, level: int) -> None:
    assert level_from_ratio(ratio) == level


@pytest.mark.parametrize(("jam", "level"), [(0.0, 0), (3.9, 0), (4.0, 1), (7.9, 1), (8.0, 2), (9.9, 2), (10.0, 3)])
def test_jam_factor_thresholds(jam: float, level: int) -> None:
    assert level_from_jam_factor(jam) == level


def test_missing_speed_data_is_level_zero_low_confidence() -> None:
    sample = to_sample(RawFlow(provider="tomtom_flow"))
    assert sample.level == 0
    assert sample.low_confidence is True


def test_road_closure_forces_heavy() -> None:
    sample = to_sample(RawFlow(provider="here_flow", current_speed_kmh=80, free_flow_speed_kmh=80, road_closure=True))
    assert sample.level == 3
    assert sample.road_closure is True


class FakeFlow:
    def __init__(self, name: str, *, raw: RawFlow | None = None, error: Exception | None = None) -> None:
        self.name = name
        self.raw = raw
        self.error = error
        self.calls = 0

    async def fetch_flow(self, coordinate, *, timeout_s: float) -> RawFlow:
        self.calls += 1
        if self.error is not None:
            raise self.error
        assert self.raw is not None
        return self.raw


def test_classifier_uses_primary_ratio() -> None:
    primary = FakeFlow("tomtom_flow", raw=RawFlow(provider="tomtom_flow", current_speed_kmh=20, free_flow_speed_kmh=50))
    secondary = FakeFlow("here_flow", raw=RawFlow(provider="here_flow", jam_factor=0.0))

    sample = asyncio.run(TrafficFlowClassifier(primary, secondary, timeout_s=1).classify((41.88, -87.63)))

    assert sample.level == 2  # 0.40
    assert sample.provider == "tomtom_flow"
    assert secondary.calls == 0


def test_classifier_falls_back_once() -> None:
    primary = FakeFlow("tomtom_flow", error=NetworkError("down", provider="tomtom_flow"))
    secondary = FakeFlow("here_flow", raw=RawFlow(provider="here_flow", jam_factor=9.0))

    sample = asyncio.run(TrafficFlowClassifier(primary, secondary, timeout_s=1).classify((41.88, -87.63)))

    assert sample.level == 2
    assert sample.provider == "here_flow"
    assert primary.calls == 1
    assert secondary.calls == 1


def test_classifier_both_failing_is_exhausted() -> None:
    primary = FakeFlow("tomtom_flow", error=NetworkError("down", provider="tomtom_flow"))
    secondary = FakeFlow("here_flow", error=NetworkError("down", provider="here_flow"))

    with pytest.raises(ProviderExhausted) as exc_info:
        asyncio.run(TrafficFlowClassifier(primary, secondary, timeout_s=1).classify((41.88, -87.63)))
    assert len(exc_info.value.errors) == 2


def _client(cls, handler, **kwargs: Any):
    return cls(
        "https://traffic.test/flow",
        "key",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


def test_tomtom_flow_client_parses_segment() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["point"] == "41.88,-87.63"
        return httpx.Response(
            200,
            json={
                "flowSegmentData": {
                    "currentSpeed": 40,
                    "freeFlowSpeed": 50,
                    "confidence": 0.95,
                    "roadClosure": False,
                }
            },
        )

    raw = asyncio.run(_client(TomTomFlowClient, handler).fetch_flow((41.88, -87.63), timeout_s=1))
    assert to_sample(raw).level == 0  # 0.80
    assert raw.confidence == pytest.approx(0.95)


def test_here_flow_client_converts_speeds_and_reads_jam_factor() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["in"] == "circle:41.88,-87.63;r=50"
        return httpx.Response(
            200,
            json={
                "results": [
                    {
                        "currentFlow": {
                            "speed": 5.0,
                            "freeFlow": 20.0,
                            "jamFactor": 8.5,
                            "confidence": 0.8,
                            "traversability": "open",
                        }
                    }
                ]
            },
        )

    raw = asyncio.run(_client(HereFlowClient, handler, radius_m=50).fetch_flow((41.88, -87.63), timeout_s=1))
    assert raw.current_speed_kmh == pytest.approx(18.0)
    assert raw.free_flow_speed_kmh == pytest.approx(72.0)
    assert to_sample(raw).level == 2


def test_here_flow_without_results_is_low_confidence() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"results": []})

    raw = asyncio.run(_client(HereFlowClient, handler).fetch_flow((41.88, -87.63), timeout_s=1))
    assert to_sample(raw).low_confidence is True


def test_refresher_keeps_running_after_a_failed_tick() -> None:
    async def scenario() -> int:
        calls = 0

        async def refresh() -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ProviderExhausted("no traffic", errors=[])

        refresher = TrafficRefresher(refresh, interval_s=0.01)
        refresher.start()
        for _ in range(100):
            if calls >= 3:
                break
            await asyncio.sleep(0.01)
        await refresher.stop()
        return calls

    assert asyncio.run(scenario()) >= 3


def test_refresher_survives_unexpected_errors() -> None:
    async def scenario() -> tuple[int, bool]:
        calls = 0

        async def refresh() -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise KeyError("flowSegmentData")

        refresher = TrafficRefresher(refresh, interval_s=0.01)
        refresher.start()
        for _ in range(100):
            if calls >= 2:
                break
            await asyncio.sleep(0.01)
        running = refresher.running
        await refresher.stop()
        return calls, running

    calls, running = asyncio.run(scenario())
    assert calls >= 2
    assert running is True

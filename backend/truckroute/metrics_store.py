from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock


@dataclass
class CallStats:
    call_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    last_error: str | None = None


class MetricsStore:
    """Per-provider call counters plus named event counters (fallbacks, degradations)."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._created_at = datetime.now(UTC).isoformat()
        self._calls: dict[str, CallStats] = {}
        self._counters: dict[str, int] = {}

    def record_call(
        self,
        provider: str,
        *,
        duration_ms: float,
        error: str | None = None,
    ) -> None:
        name = provider.strip() or "unknown"
        d_ms = max(float(duration_ms), 0.0)

        with self._lock:
            stats = self._calls.setdefault(name, CallStats())
            stats.call_count += 1
            if error:
                stats.error_count += 1
                stats.last_error = error
            stats.total_duration_ms += d_ms
            stats.max_duration_ms = max(stats.max_duration_ms, d_ms)

    def incr(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[counter] = self._counters.get(counter, 0) + int(amount)

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            providers: dict[str, dict[str, float | int | str | None]] = {}
            for name in sorted(self._calls):
                stats = self._calls[name]
                avg = stats.total_duration_ms / stats.call_count if stats.call_count else 0.0
                providers[name] = {
                    "call_count": stats.call_count,
                    "error_count": stats.error_count,
                    "avg_duration_ms": round(avg, 3),
                    "max_duration_ms": round(stats.max_duration_ms, 3),
                    "last_error": stats.last_error,
                }
            return {
                "created_at": self._created_at,
                "providers": providers,
                "counters": dict(sorted(self._counters.items())),
            }

    def reset(self) -> None:
        with self._lock:
            self._created_at = datetime.now(UTC).isoformat()
            self._calls.clear()
            self._counters.clear()


METRICS = MetricsStore()


def record_call(provider: str, *, duration_ms: float, error: str | None = None) -> None:
    METRICS.record_call(provider, duration_ms=duration_ms, error=error)


def incr(counter: str, amount: int = 1) -> None:
    METRICS.incr(counter, amount)


def metrics_snapshot() -> dict[str, object]:
    return METRICS.snapshot()


def reset_metrics() -> None:
    METRICS.reset()

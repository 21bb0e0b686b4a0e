"""Simple observability primitives for the control loops."""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import UTC, datetime
from statistics import mean
from threading import RLock
from time import perf_counter


@dataclass(frozen=True, slots=True)
class TickMetric:
    loop: str
    outcome: str
    duration_ms: float


LATENCY_WINDOW = 1000


class MetricsStore:
    """Per-loop tick counters. Latency stats cover the last ``latency_window`` ticks."""

    def __init__(self, latency_window: int = LATENCY_WINDOW) -> None:
        self._lock = RLock()
        self._tick_count = 0
        self._outcome_counts: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._loop_latencies: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=max(1, latency_window))
        )
        self._last_outcome: dict[str, dict[str, str]] = {}
        self._last_error: dict[str, str] | None = None

    def record(self, metric: TickMetric) -> None:
        with self._lock:
            self._tick_count += 1
            self._outcome_counts[metric.loop][metric.outcome] += 1
            self._loop_latencies[metric.loop].append(metric.duration_ms)
            self._last_outcome[metric.loop] = {
                "outcome": metric.outcome,
                "at": datetime.now(UTC).isoformat(),
            }

    def record_error(self, loop: str, error: BaseException) -> None:
        with self._lock:
            self._last_error = {
                "loop": loop,
                "error": f"{type(error).__name__}: {error}",
                "at": datetime.now(UTC).isoformat(),
            }

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            latency_summary = {
                loop: {
                    "count": len(values),
                    "avg_ms": round(mean(values), 2),
                    "max_ms": round(max(values), 2),
                }
                for loop, values in self._loop_latencies.items()
                if values
            }
            return {
                "tick_count": self._tick_count,
                "outcome_counts": {
                    loop: dict(counts) for loop, counts in self._outcome_counts.items()
                },
                "tick_latency_ms": latency_summary,
                "last_outcome": dict(self._last_outcome),
                "last_error": self._last_error,
            }


def duration_ms(start_time: float) -> float:
    return (perf_counter() - start_time) * 1000.0

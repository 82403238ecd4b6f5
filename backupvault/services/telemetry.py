from __future__ import annotations

import math
from collections import defaultdict, deque
from typing import Deque


_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}
_durations: dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=5000))


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for job outcomes, crypto ops and retention actions.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def record_duration(name: str, duration_ms: float) -> None:
    # Keep a bounded window of durations per operation for ops percentiles.
    _durations[name].append(float(duration_ms))


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def duration_stats(name: str) -> dict[str, float | None]:
    # Summarize p50/p95/max for a recorded operation.
    samples = sorted(_durations.get(name, ()))
    if not samples:
        return {"count": 0, "p50": None, "p95": None, "max": None}
    p50_idx = max(0, math.ceil(0.5 * len(samples)) - 1)
    p95_idx = max(0, math.ceil(0.95 * len(samples)) - 1)
    return {
        "count": float(len(samples)),
        "p50": samples[p50_idx],
        "p95": samples[p95_idx],
        "max": samples[-1],
    }


def durations_snapshot() -> dict[str, dict[str, float | None]]:
    return {name: duration_stats(name) for name in list(_durations)}


def reset_telemetry() -> None:
    # Tests reset process-local metrics between cases.
    _counters.clear()
    _gauges.clear()
    _durations.clear()

from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class PhaseSample:
    ts: float
    subsystem: str
    status: str
    duration_ms: float


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_phase_samples: Deque[PhaseSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_phase(*, subsystem: str, status: str, duration_ms: float) -> None:
    # Track per-subsystem erasure outcomes so failing adapters are visible before audits are.
    _phase_samples.append(
        PhaseSample(ts=time.time(), subsystem=subsystem, status=status, duration_ms=duration_ms)
    )
    increment_counter(f"erasure_phase_total.{subsystem}.{status}")


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def phase_latency_by_subsystem(window_s: int) -> dict[str, dict[str, float]]:
    # Aggregate p95/max phase duration per subsystem within the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[float]] = defaultdict(list)
    for sample in _phase_samples:
        if sample.ts < cutoff:
            continue
        grouped[sample.subsystem].append(sample.duration_ms)
    result: dict[str, dict[str, float]] = {}
    for subsystem, durations in grouped.items():
        durations.sort()
        p95_idx = max(0, math.ceil(0.95 * len(durations)) - 1)
        result[subsystem] = {"p95": durations[p95_idx], "max": durations[-1]}
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    _request_samples.clear()
    _phase_samples.clear()
    _counters.clear()


def request_summary(window_s: int) -> dict[str, float]:
    # Summarize API traffic inside the window for the ops view.
    cutoff = time.time() - window_s
    latencies = sorted(sample.latency_ms for sample in _request_samples if sample.ts >= cutoff)
    errors = sum(1 for sample in _request_samples if sample.ts >= cutoff and sample.status_code >= 500)
    if not latencies:
        return {"count": 0, "errors_5xx": 0, "p95_ms": 0.0}
    p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return {"count": len(latencies), "errors_5xx": errors, "p95_ms": latencies[p95_idx]}

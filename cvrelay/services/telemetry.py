from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def get_counter(name: str) -> int:
    return int(_counters.get(name, 0))


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def external_call_stats(integration: str, window_s: int = 3600) -> dict[str, float | int]:
    # Summarize recent calls for one integration (ops visibility).
    cutoff = time.time() - window_s
    samples = [
        sample
        for sample in _external_samples
        if sample.integration == integration and sample.ts >= cutoff
    ]
    if not samples:
        return {"count": 0, "failures": 0, "avg_latency_ms": 0.0}
    failures = sum(1 for sample in samples if not sample.success)
    avg = sum(sample.latency_ms for sample in samples) / len(samples)
    return {"count": len(samples), "failures": failures, "avg_latency_ms": avg}


def reset_telemetry() -> None:
    # Allow tests to start from empty counters.
    _external_samples.clear()
    _counters.clear()

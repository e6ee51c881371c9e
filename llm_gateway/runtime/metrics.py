from __future__ import annotations

from collections import Counter, deque
from math import ceil
from threading import Lock
from typing import Any


def percentile(values: list[float], quantile: float) -> float | None:
    if not values:
        return None
    sorted_values = sorted(values)
    rank = max(1, ceil(quantile * len(sorted_values)))
    idx = min(len(sorted_values) - 1, rank - 1)
    return float(sorted_values[idx])


class VirtualModelMetrics:
    def __init__(
        self,
        *,
        latency_window_size: int = 256,
        ewma_alpha: float = 0.2,
    ) -> None:
        self._lock = Lock()
        self._ewma_alpha = min(1.0, max(0.01, float(ewma_alpha)))
        self._latency_samples: deque[float] = deque(maxlen=max(10, int(latency_window_size)))
        self._requests_total = 0
        self._successes_total = 0
        self._failures_total = 0
        self._attempts_total = 0
        self._failovers_total = 0
        self._latency_sum_ms = 0.0
        self._latency_ewma_ms: float | None = None
        self._errors_by_type: Counter[str] = Counter()
        self._selections_by_pipeline: Counter[str] = Counter()

    def record_attempt(self, pipeline_id: str) -> None:
        with self._lock:
            self._attempts_total += 1
            self._selections_by_pipeline[pipeline_id] += 1

    def record_error(self, error_type: str) -> None:
        with self._lock:
            self._errors_by_type[error_type] += 1

    def record_failover(self) -> None:
        with self._lock:
            self._failovers_total += 1

    def record_outcome(self, *, succeeded: bool, latency_ms: float) -> None:
        latency_ms = max(0.0, latency_ms)
        with self._lock:
            self._requests_total += 1
            if succeeded:
                self._successes_total += 1
            else:
                self._failures_total += 1
            self._latency_sum_ms += latency_ms
            self._latency_samples.append(latency_ms)
            if self._latency_ewma_ms is None:
                self._latency_ewma_ms = latency_ms
            else:
                self._latency_ewma_ms = (
                    self._ewma_alpha * latency_ms
                    + (1.0 - self._ewma_alpha) * self._latency_ewma_ms
                )

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            requests = self._requests_total
            samples = list(self._latency_samples)
            return {
                "requests_total": requests,
                "successes_total": self._successes_total,
                "failures_total": self._failures_total,
                "attempts_total": self._attempts_total,
                "failovers_total": self._failovers_total,
                "success_rate": (
                    round(self._successes_total / requests, 6) if requests else None
                ),
                "avg_latency_ms": (
                    round(self._latency_sum_ms / requests, 3) if requests else None
                ),
                "p95_latency_ms": percentile(samples, 0.95),
                "ewma_latency_ms": (
                    round(self._latency_ewma_ms, 3)
                    if self._latency_ewma_ms is not None
                    else None
                ),
                "errors_by_type": dict(self._errors_by_type),
                "selections_by_pipeline": dict(self._selections_by_pipeline),
            }

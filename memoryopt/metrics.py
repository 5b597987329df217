from __future__ import annotations

"""Latency and throughput tracking for memory operations."""

import time
from collections import deque
from contextlib import contextmanager
from typing import Any, Callable, Deque, Dict, Iterator

from prometheus_client import Counter, Histogram

from .models import OPERATION_KINDS

OPERATION_COUNT = Counter(
    "memoryopt_operations_total",
    "Total memory operations observed by the optimization layer",
    ["kind"],
)
OPERATION_LATENCY = Histogram(
    "memoryopt_operation_seconds",
    "Time spent in memory operations",
    ["kind"],
)

DEFAULT_WINDOW = 1000


class MetricsCollector:
    """Rolling per-kind latency windows plus overall throughput.

    Only the most recent ``window`` samples per kind are kept; the total
    operation count keeps growing until :meth:`reset`.
    """

    def __init__(
        self,
        cache: Any | None = None,
        window: int = DEFAULT_WINDOW,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.window = window
        self._clock = clock
        self._samples: Dict[str, Deque[float]] = {k: deque(maxlen=window) for k in OPERATION_KINDS}
        self.total_ops = 0
        self.started = clock()

    def record(self, kind: str, duration_ms: float) -> None:
        if kind not in self._samples:
            raise ValueError(f"unknown operation kind: {kind!r}")
        self._samples[kind].append(duration_ms)
        self.total_ops += 1
        OPERATION_COUNT.labels(kind=kind).inc()
        OPERATION_LATENCY.labels(kind=kind).observe(duration_ms / 1000.0)

    @contextmanager
    def track(self, kind: str) -> Iterator[None]:
        """Time the enclosed block and record it, whether or not it raises."""
        start = self._clock()
        try:
            yield
        finally:
            self.record(kind, (self._clock() - start) * 1000.0)

    def samples(self, kind: str) -> list[float]:
        return list(self._samples[kind])

    def mean_latency(self, kind: str) -> float:
        samples = self._samples[kind]
        return sum(samples) / len(samples) if samples else 0.0

    def snapshot(self) -> dict[str, Any]:
        elapsed = self._clock() - self.started
        return {
            "cache_stats": self.cache.stats() if self.cache is not None else {},
            "operation_latency": {k: self.mean_latency(k) for k in OPERATION_KINDS},
            "throughput": {
                "ops_per_second": self.total_ops / elapsed if elapsed > 0 else 0.0,
                "total_ops": self.total_ops,
            },
        }

    def reset(self) -> None:
        for samples in self._samples.values():
            samples.clear()
        self.total_ops = 0
        self.started = self._clock()
        if self.cache is not None:
            self.cache.clear()
            self.cache.reset_stats()


__all__ = ["MetricsCollector", "OPERATION_COUNT", "OPERATION_LATENCY", "DEFAULT_WINDOW"]

"""In-memory telemetry backend for tests and local runs."""

from __future__ import annotations

import threading
from collections import defaultdict

from memkeep.telemetry.base import Labels


def metric_key(name: str, labels: Labels = ()) -> str:
    """``name{k=v,...}``; the bare name when there are no labels."""
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in labels) + "}"


class InMemoryTelemetry:
    """Keeps every metric in dictionaries for inspection.

    Shared by capture workers and recall threads, so every mutation
    happens under one lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.counters: dict[str, int] = defaultdict(int)
        self.gauges: dict[str, float] = {}
        self.histograms: dict[str, list[float]] = defaultdict(list)
        self.timings: dict[str, list[float]] = defaultdict(list)

    def incr(self, name: str, value: int = 1, labels: Labels = ()) -> None:
        with self._lock:
            self.counters[metric_key(name, labels)] += value

    def gauge(self, name: str, value: float, labels: Labels = ()) -> None:
        with self._lock:
            self.gauges[metric_key(name, labels)] = value

    def histogram(self, name: str, value: float, labels: Labels = ()) -> None:
        with self._lock:
            self.histograms[metric_key(name, labels)].append(value)

    def timing(self, name: str, value: float, labels: Labels = ()) -> None:
        with self._lock:
            self.timings[metric_key(name, labels)].append(value)

    def get_counter(self, name: str, labels: Labels = ()) -> int:
        with self._lock:
            return self.counters.get(metric_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Labels = ()) -> float | None:
        with self._lock:
            return self.gauges.get(metric_key(name, labels))

    def get_timing_values(self, name: str, labels: Labels = ()) -> list[float]:
        with self._lock:
            return list(self.timings.get(metric_key(name, labels), []))

    def reset(self) -> None:
        with self._lock:
            self.counters.clear()
            self.gauges.clear()
            self.histograms.clear()
            self.timings.clear()

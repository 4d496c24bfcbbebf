"""Telemetry port implemented by every metrics backend."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

Labels = tuple[tuple[str, str], ...]


@runtime_checkable
class TelemetryPort(Protocol):
    """What capture, the worker pool and recall report through.

    Names in use: ``captures_total{outcome}``,
    ``capture_jobs_dropped_total{reason}``, ``capture_queue_size``,
    ``recall_total{status}`` and ``recall_duration_seconds``. Components
    take ``None`` to mean no telemetry at all.
    """

    def incr(self, name: str, value: int = 1, labels: Labels = ()) -> None: ...

    def gauge(self, name: str, value: float, labels: Labels = ()) -> None: ...

    def histogram(self, name: str, value: float, labels: Labels = ()) -> None: ...

    def timing(self, name: str, value: float, labels: Labels = ()) -> None:
        """Record a duration in seconds."""
        ...

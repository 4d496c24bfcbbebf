"""Prometheus metrics backend for memkeep.

Usage:
    telemetry = PrometheusTelemetry(PrometheusConfig(port=9464))
    telemetry.start()
    telemetry.incr("captures_total", labels=(("outcome", "inserted"),))

    # Metrics available at http://localhost:9464/metrics
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from memkeep.telemetry.base import Labels


@dataclass
class PrometheusConfig:
    """Configuration for Prometheus telemetry backend."""

    enabled: bool = True
    port: int = 9464
    host: str = "127.0.0.1"  # localhost only by default


class PrometheusTelemetry:
    """Prometheus-backed telemetry with a /metrics endpoint.

    Registers the standard memkeep metrics up front and creates ad-hoc
    metrics on first use for any other name. Each instance owns its own
    registry so several services can coexist in one process.
    """

    def __init__(self, config: PrometheusConfig | None = None) -> None:
        self._config = config or PrometheusConfig()
        self._metrics: dict[str, Counter | Gauge | Histogram] = {}
        self._started = False
        self.registry = CollectorRegistry()

        if not self._config.enabled:
            logger.info("Prometheus telemetry disabled")
            return

        self._register_standard_metrics()

    def _register_standard_metrics(self) -> None:
        self._metrics["captures_total"] = Counter(
            "memkeep_captures_total",
            "Capture events by final outcome",
            labelnames=["outcome"],  # inserted/superseded/rejected/dropped
            registry=self.registry,
        )
        self._metrics["capture_jobs_dropped_total"] = Counter(
            "memkeep_capture_jobs_dropped_total",
            "Background capture jobs dropped",
            labelnames=["reason"],  # queue_full/retries_exhausted/error
            registry=self.registry,
        )
        self._metrics["capture_queue_size"] = Gauge(
            "memkeep_capture_queue_size",
            "Pending background capture jobs",
            registry=self.registry,
        )
        self._metrics["recall_total"] = Counter(
            "memkeep_recall_total",
            "Recall operations",
            labelnames=["status"],  # hit/miss/timeout/error
            registry=self.registry,
        )
        self._metrics["recall_duration_seconds"] = Histogram(
            "memkeep_recall_duration_seconds",
            "Recall latency in seconds",
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.2, 0.3, 0.5, 1.0],
            registry=self.registry,
        )

    def start(self) -> None:
        """Start the Prometheus HTTP server."""
        if not self._config.enabled or self._started:
            return

        try:
            start_http_server(
                port=self._config.port,
                addr=self._config.host,
                registry=self.registry,
            )
            self._started = True
            logger.info(
                "Prometheus metrics server started on http://{}:{}/metrics",
                self._config.host,
                self._config.port,
            )
        except OSError as e:
            logger.error("Failed to start Prometheus server: {}", e)
            self._config.enabled = False

    def _metric(self, name: str, kind: type, labels: Labels):
        metric = self._metrics.get(name)
        if metric is None:
            labelnames = [k for k, _ in labels] if labels else []
            metric = kind(
                f"memkeep_{name}",
                f"{kind.__name__}: {name}",
                labelnames=labelnames,
                registry=self.registry,
            )
            self._metrics[name] = metric
        if labels:
            return metric.labels(**dict(labels))
        return metric

    def incr(self, name: str, value: int = 1, labels: Labels = ()) -> None:
        """Increase a named counter."""
        if not self._config.enabled:
            return
        self._metric(name, Counter, labels).inc(value)

    def gauge(self, name: str, value: float, labels: Labels = ()) -> None:
        """Set a gauge value."""
        if not self._config.enabled:
            return
        self._metric(name, Gauge, labels).set(value)

    def histogram(self, name: str, value: float, labels: Labels = ()) -> None:
        """Observe a histogram value."""
        if not self._config.enabled:
            return
        self._metric(name, Histogram, labels).observe(value)

    def timing(self, name: str, value: float, labels: Labels = ()) -> None:
        """Record timing in seconds (alias for histogram)."""
        self.histogram(name, value, labels)


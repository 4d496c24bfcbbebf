"""Telemetry backends for memkeep."""

from memkeep.telemetry.base import TelemetryPort
from memkeep.telemetry.inmemory import InMemoryTelemetry
from memkeep.telemetry.prometheus import PrometheusConfig, PrometheusTelemetry

__all__ = ["InMemoryTelemetry", "PrometheusConfig", "PrometheusTelemetry", "TelemetryPort", "build_telemetry"]


def build_telemetry(backend: str, *, host: str = "127.0.0.1", port: int = 9464) -> TelemetryPort | None:
    """Create the configured telemetry backend, or None when disabled."""
    if backend == "inmemory":
        return InMemoryTelemetry()
    if backend == "prometheus":
        telemetry = PrometheusTelemetry(PrometheusConfig(host=host, port=port))
        telemetry.start()
        return telemetry
    return None

from memkeep.telemetry import InMemoryTelemetry, PrometheusConfig, PrometheusTelemetry, TelemetryPort, build_telemetry


def test_inmemory_counts_by_label() -> None:
    telemetry = InMemoryTelemetry()
    telemetry.incr("recall_total", labels=(("status", "hit"),))
    telemetry.incr("recall_total", labels=(("status", "hit"),))
    telemetry.incr("recall_total", labels=(("status", "miss"),))
    telemetry.gauge("capture_queue_size", 3)
    telemetry.timing("recall_duration_seconds", 0.01)

    assert telemetry.get_counter("recall_total", (("status", "hit"),)) == 2
    assert telemetry.get_counter("recall_total", (("status", "timeout"),)) == 0
    assert telemetry.get_gauge("capture_queue_size") == 3
    assert telemetry.get_timing_values("recall_duration_seconds") == [0.01]

    telemetry.reset()
    assert telemetry.get_counter("recall_total", (("status", "hit"),)) == 0


def test_prometheus_registers_memkeep_metrics() -> None:
    telemetry = PrometheusTelemetry(PrometheusConfig())
    telemetry.incr("captures_total", labels=(("outcome", "inserted"),))
    telemetry.timing("recall_duration_seconds", 0.02)
    telemetry.incr("custom_events_total")

    registry = telemetry.registry
    assert registry.get_sample_value("memkeep_captures_total", {"outcome": "inserted"}) == 1.0
    assert registry.get_sample_value("memkeep_recall_duration_seconds_count") == 1.0
    assert registry.get_sample_value("memkeep_custom_events_total") == 1.0


def test_disabled_prometheus_is_a_no_op() -> None:
    telemetry = PrometheusTelemetry(PrometheusConfig(enabled=False))
    telemetry.incr("captures_total", labels=(("outcome", "inserted"),))
    assert telemetry.registry.get_sample_value("memkeep_captures_total", {"outcome": "inserted"}) is None


def test_build_telemetry() -> None:
    assert build_telemetry("none") is None
    backend = build_telemetry("inmemory")
    assert isinstance(backend, InMemoryTelemetry)
    assert isinstance(backend, TelemetryPort)

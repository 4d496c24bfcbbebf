import sqlite3
import threading
import time

import pytest

from memkeep.memory.models import MemoryRecord, MemoryTier
from memkeep.memory.recall import RecallEngine
from memkeep.memory.store import MemoryStore
from memkeep.telemetry import InMemoryTelemetry


class SlowStore:
    """Yields one row immediately, then stalls."""

    def __init__(self, stall_s: float = 0.4) -> None:
        self.stall_s = stall_s
        self.limits: list[int] = []
        self.touched: list[list[str]] = []
        self.released = threading.Event()

    def iter_recall_candidates(self, user_id, keywords, *, limit, recency_window_hours=24):
        self.limits.append(limit)
        yield MemoryRecord(id="fast", user_id=user_id, content="first row")
        self.released.wait(self.stall_s)
        yield MemoryRecord(id="slow", user_id=user_id, content="second row")

    def touch_last_seen(self, record_ids, ts=None):
        self.touched.append(list(record_ids))
        return len(record_ids)


class BrokenStore:
    def iter_recall_candidates(self, user_id, keywords, *, limit, recency_window_hours=24):
        raise sqlite3.OperationalError("unable to open database file")
        yield  # pragma: no cover

    def touch_last_seen(self, record_ids, ts=None):
        return 0


def test_deadline_returns_partial_results_without_raising() -> None:
    store = SlowStore()
    telemetry = InMemoryTelemetry()
    engine = RecallEngine(store, default_deadline_ms=50, telemetry=telemetry)
    try:
        started = time.monotonic()
        result = engine.recall("u1")
        elapsed = time.monotonic() - started
    finally:
        store.released.set()
        engine.close()

    assert result.timed_out
    assert [m.id for m in result.memories] == ["fast"]
    assert elapsed < 0.3
    assert result.elapsed_ms < 300
    assert telemetry.get_counter("recall_total", (("status", "timeout"),)) == 1


def test_store_failure_degrades_to_empty() -> None:
    telemetry = InMemoryTelemetry()
    engine = RecallEngine(BrokenStore(), telemetry=telemetry)
    try:
        result = engine.recall("u1", "dog")
    finally:
        engine.close()

    assert result.memories == []
    assert not result.timed_out
    assert telemetry.get_counter("recall_total", (("status", "error"),)) == 1


def test_limits_are_clamped_to_hard_caps() -> None:
    engine = RecallEngine(SlowStore(stall_s=0), default_deadline_ms=200, max_deadline_ms=10_000, max_items=100)
    try:
        assert engine.max_deadline_ms == 500
        assert engine.max_items == 20
        assert engine._clamp(None, None) == (10, 200.0)
        assert engine._clamp(100, 10_000) == (20, 500.0)
        assert engine._clamp(0, -5) == (1, 200.0)
    finally:
        engine.close()


def test_store_is_asked_for_clamped_item_count() -> None:
    store = SlowStore(stall_s=0)
    engine = RecallEngine(store)
    try:
        result = engine.recall("u1", max_items=50)
    finally:
        engine.close()
    assert store.limits == [20]
    assert not result.timed_out
    assert [m.id for m in result.memories] == ["fast", "slow"]


def test_recall_updates_last_seen(store: MemoryStore) -> None:
    saved = store.insert(MemoryRecord(id="", user_id="u1", content="my dog's name is Max", tier=MemoryTier.TIER1))
    before = store.get(saved.id).last_seen_ts
    engine = RecallEngine(store)
    try:
        result = engine.recall("u1", "what's my dog's name?")
        assert [m.id for m in result.memories] == [saved.id]
        deadline = time.monotonic() + 2.0
        while store.get(saved.id).last_seen_ts == before and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        engine.close()
    assert store.get(saved.id).last_seen_ts > before


def test_recall_miss_for_unknown_user(store: MemoryStore) -> None:
    telemetry = InMemoryTelemetry()
    engine = RecallEngine(store, telemetry=telemetry)
    try:
        result = engine.recall("nobody", "dog")
    finally:
        engine.close()
    assert result.memories == []
    assert telemetry.get_counter("recall_total", (("status", "miss"),)) == 1
    assert len(telemetry.get_timing_values("recall_duration_seconds")) == 1


async def test_arecall_does_not_block_event_loop(store: MemoryStore) -> None:
    store.insert(MemoryRecord(id="", user_id="u1", content="I prefer window seats"))
    engine = RecallEngine(store)
    try:
        result = await engine.arecall("u1", "seats")
    finally:
        engine.close()
    assert [m.content for m in result.memories] == ["I prefer window seats"]


@pytest.mark.parametrize("deadline_ms", [1, 5])
def test_tiny_deadlines_never_raise(deadline_ms: int) -> None:
    store = SlowStore()
    engine = RecallEngine(store)
    try:
        result = engine.recall("u1", deadline_ms=deadline_ms)
    finally:
        store.released.set()
        engine.close()
    assert result.elapsed_ms < 300
    assert result.timed_out or result.memories


def test_stalled_store_does_not_pile_up_recalls() -> None:
    store = SlowStore(stall_s=10.0)
    telemetry = InMemoryTelemetry()
    engine = RecallEngine(store, pool_workers=2, telemetry=telemetry)
    try:
        results = [engine.recall("u1", deadline_ms=10) for _ in range(20)]
        queued = engine._executor._work_queue.qsize()
    finally:
        store.released.set()
        engine.close()

    assert all(r.timed_out for r in results)
    assert queued == 0
    assert len(store.limits) <= 2
    assert telemetry.get_counter("recall_total", (("status", "saturated"),)) >= 18


def test_query_recall_drops_unrelated_rows(store: MemoryStore) -> None:
    store.insert(MemoryRecord(id="", user_id="u1", content="I prefer window seats"))
    store.insert(MemoryRecord(id="", user_id="u1", content="The weather in Lisbon was lovely"))
    store.insert(MemoryRecord(id="", user_id="u1", content="My favorite seats are", tier=MemoryTier.TIER1))
    engine = RecallEngine(store)
    try:
        result = engine.recall("u1", "seats")
        unfiltered = engine.recall("u1")
    finally:
        engine.close()
    assert [m.content for m in result.memories] == ["I prefer window seats"]
    assert len(unfiltered.memories) == 3

import time
from pathlib import Path

import pytest

from memkeep.config.schema import MemoryCaptureConfig, MemoryConfig, MemoryRecallConfig, MemoryScoringConfig
from memkeep.memory import (
    CaptureEvent,
    MemoryNotFoundError,
    MemoryOwnershipError,
    MemoryRecord,
    MemoryService,
    MemoryStateError,
    MemoryTier,
    MemoryValidationError,
)
from memkeep.telemetry import InMemoryTelemetry
from memkeep.utils.helpers import utc_now_iso


def _service(tmp_path: Path, **overrides) -> MemoryService:
    config = MemoryConfig(db_path=str(tmp_path / "memories.db"), **overrides)
    return MemoryService(config)


@pytest.fixture
def service(tmp_path: Path):
    svc = _service(tmp_path)
    yield svc
    svc.close()


def test_explicit_fact_is_recalled_in_a_later_query(service: MemoryService) -> None:
    service.remember("u1", "Remember that my dog's name is Max", thread_id="t1")

    result = service.recall("u1", "what's my dog's name?", thread_id="t2")
    assert not result.timed_out
    assert any("Max" in m.content for m in result.memories)

    block = service.build_context("u1", "dog")
    assert block.startswith("[Retrieved Memory]")
    assert "my dog's name is Max" in block


def test_newer_fact_replaces_older_one(service: MemoryService) -> None:
    first = service.remember("u1", "My favorite color is red")
    time.sleep(0.002)
    outcome = service.remember("u1", "My favorite color is blue")

    live = service.list("u1")
    assert len(live) == 1
    assert live[0].id == outcome.record.id
    assert live[0].content == "My favorite color is blue"
    assert live[0].repeats == 2
    assert live[0].created_at == first.record.created_at
    assert live[0].updated_at > first.record.updated_at


def test_recall_orders_tiers_when_timestamps_match(service: MemoryService) -> None:
    ts = utc_now_iso()
    for tier in (MemoryTier.TIER2, MemoryTier.TIER3, MemoryTier.TIER1):
        service.store.insert(
            MemoryRecord(
                id="",
                user_id="u1",
                content=f"a {tier.value} fact",
                tier=tier,
                created_at=ts,
                updated_at=ts,
                last_seen_ts=ts,
            )
        )

    result = service.recall("u1")
    assert [m.tier for m in result.memories] == [MemoryTier.TIER1, MemoryTier.TIER2, MemoryTier.TIER3]


def test_all_pii_message_is_rejected(service: MemoryService) -> None:
    with pytest.raises(MemoryValidationError) as exc:
        service.remember("u1", "jane@example.com 555-123-4567")
    assert exc.value.reason == "all_redacted"
    assert service.list("u1") == []


def test_empty_explicit_save_is_rejected(service: MemoryService) -> None:
    with pytest.raises(MemoryValidationError) as exc:
        service.remember("u1", "   ")
    assert exc.value.reason == "empty_content"


def test_passive_capture_across_threads_promotes(tmp_path: Path) -> None:
    scoring = MemoryScoringConfig(tier1_threshold=0.5, tier2_threshold=0.5, tier3_threshold=0.5)
    svc = _service(tmp_path, scoring=scoring)
    try:
        for thread in ("t1", "t2", "t3"):
            assert svc.capture_turn("u1", "I work remotely on Fridays", thread_id=thread)
            assert svc.flush(timeout=5.0)

        live = svc.list("u1")
        assert len(live) == 1
        assert live[0].tier == MemoryTier.TIER1
        assert live[0].repeats == 3
        assert live[0].thread_set == {"t1", "t2", "t3"}
        assert svc.stats()["tracker"]["topics"] == 1
    finally:
        svc.close()


def test_capture_routes_explicit_and_passive_events(service: MemoryService) -> None:
    assert service.capture(CaptureEvent(user_id="u1", content="My favorite tea is oolong", explicit=True))
    assert service.capture(CaptureEvent(user_id="u1", content="ok"))
    assert service.flush()
    assert [m.content for m in service.list("u1")] == ["My favorite tea is oolong"]


def test_capture_disabled_rejects_turns(tmp_path: Path) -> None:
    svc = _service(tmp_path, capture=MemoryCaptureConfig(enabled=False))
    try:
        assert not svc.capture_turn("u1", "I always use vim and never emacs, that is important.")
    finally:
        svc.close()


def test_records_are_owner_checked(service: MemoryService) -> None:
    record = service.create("u1", "I am allergic to peanuts", tier=MemoryTier.TIER1)

    assert service.get("u1", record.id).content == "I am allergic to peanuts"
    with pytest.raises(MemoryOwnershipError):
        service.get("u2", record.id)
    with pytest.raises(MemoryOwnershipError):
        service.update("u2", record.id, priority=0.1)
    with pytest.raises(MemoryOwnershipError):
        service.delete("u2", record.id)
    with pytest.raises(MemoryNotFoundError):
        service.get("u1", "does-not-exist")


def test_deleted_records_cannot_be_edited_or_recalled(service: MemoryService) -> None:
    record = service.create("u1", "I live in Lisbon")
    assert service.delete("u1", record.id)

    with pytest.raises(MemoryStateError):
        service.update("u1", record.id, content="I live in Porto")
    with pytest.raises(MemoryNotFoundError):
        service.get("u1", record.id)
    assert service.recall("u1", "Lisbon").memories == []


def test_create_validates_input(service: MemoryService) -> None:
    with pytest.raises(MemoryValidationError) as exc:
        service.create("u1", "fine text", priority=1.5)
    assert exc.value.reason == "out_of_range"

    with pytest.raises(MemoryValidationError) as exc:
        service.create("u1", "fine text", tier="TIER9")
    assert exc.value.reason == "invalid_tier"

    with pytest.raises(MemoryValidationError) as exc:
        service.create("u1", "jane@example.com")
    assert exc.value.reason == "all_redacted"


def test_update_redacts_new_content(service: MemoryService) -> None:
    record = service.create("u1", "Call me on the landline")
    updated = service.update("u1", record.id, content="Call me at 555-123-4567", tier="TIER2")

    assert updated.content == "Call me at [PHONE_REDACTED]"
    assert updated.tier == MemoryTier.TIER2
    assert service.restore_content("u1", record.id) == "Call me at 555-123-4567"
    with pytest.raises(MemoryOwnershipError):
        service.restore_content("u2", record.id)
    assert [a.action for a in service.audits("u1", record.id)] == ["insert", "update"]


def test_profile_events_and_cache(service: MemoryService) -> None:
    events = []
    unsubscribe = service.subscribe(events.append)

    service.remember("u1", "My name is Ana")
    assert len(events) == 1
    assert events[0].user_id == "u1"
    assert events[0].tier == MemoryTier.TIER1

    profile = service.get_profile("u1")
    assert profile.facts == ["My name is Ana"]
    assert service.get_profile("u1") is profile

    service.remember("u1", "My favorite city is Kyoto")
    assert len(events) == 2
    assert "My favorite city is Kyoto" in service.get_profile("u1").facts

    unsubscribe()
    service.remember("u1", "My shoe size is 42")
    assert len(events) == 2


def test_search_and_stats(service: MemoryService) -> None:
    service.create("u1", "I collect vinyl records")
    service.create("u2", "I collect stamps")

    hits = service.search("u1", "collect")
    assert [r.content for r, _ in hits] == ["I collect vinyl records"]

    stats = service.stats()
    assert stats["total_active"] == 2
    assert stats["capture_pending"] == 0
    assert stats["wal_enabled"] is True


def test_run_retention_through_service(service: MemoryService) -> None:
    record = service.create("u1", "weak fact", tier=MemoryTier.TIER2, priority=0.1)
    report = service.run_retention()
    assert report.demoted == 1
    assert service.get("u1", record.id).tier == MemoryTier.TIER3


def test_capture_metrics(tmp_path: Path) -> None:
    telemetry = InMemoryTelemetry()
    config = MemoryConfig(db_path=str(tmp_path / "memories.db"))
    with MemoryService(config, telemetry=telemetry) as svc:
        svc.remember("u1", "My favorite color is red")
        svc.recall("u1", "color")
    assert telemetry.get_counter("captures_total", (("outcome", "inserted"),)) == 1
    assert telemetry.get_counter("recall_total", (("status", "hit"),)) == 1


async def test_async_recall(service: MemoryService) -> None:
    service.remember("u1", "My favorite food is ramen")
    result = await service.arecall("u1", "food")
    assert [m.content for m in result.memories] == ["My favorite food is ramen"]


def test_remember_retries_transient_failures(service: MemoryService, monkeypatch: pytest.MonkeyPatch) -> None:
    from memkeep.memory.errors import CaptureFailedError, TransientStorageError

    calls = []

    def locked(event):
        calls.append(event)
        raise TransientStorageError("database is locked")

    monkeypatch.setattr(service.pipeline, "process", locked)
    monkeypatch.setattr("memkeep.memory.service.time.sleep", lambda s: None)

    with pytest.raises(CaptureFailedError) as exc:
        service.remember("u1", "My favorite color is red")
    assert exc.value.attempts == 3
    assert len(calls) == 3


def test_passive_fact_repeated_in_three_threads_is_kept(service: MemoryService) -> None:
    for thread in ("t1", "t2", "t3"):
        assert service.capture_turn("u1", "I am allergic to peanuts.", thread_id=thread)
        assert service.flush(timeout=5.0)

    live = service.list("u1")
    assert len(live) == 1
    assert live[0].tier == MemoryTier.TIER1
    assert live[0].repeats == 3
    assert live[0].thread_set == {"t1", "t2", "t3"}


def test_list_rejects_unknown_tier(service: MemoryService) -> None:
    with pytest.raises(MemoryValidationError) as exc:
        service.list("u1", tier="bogus")
    assert exc.value.reason == "invalid_tier"
    assert service.list("u1", tier="TIER1") == []


def test_recall_skips_incomplete_and_unrelated_memories(service: MemoryService) -> None:
    service.create("u1", "My favorite color is", tier=MemoryTier.TIER1)
    service.create("u1", "My favorite color is blue")
    service.create("u1", "I live in Lisbon")

    result = service.recall("u1", "what is my favorite color?")
    assert [m.content for m in result.memories] == ["My favorite color is blue"]


def test_recall_min_relevance_comes_from_config(tmp_path: Path) -> None:
    svc = _service(tmp_path, recall=MemoryRecallConfig(min_relevance=0.9))
    try:
        assert svc.recall_engine.min_relevance == 0.9
    finally:
        svc.close()
    assert MemoryRecallConfig().min_relevance == 0.25

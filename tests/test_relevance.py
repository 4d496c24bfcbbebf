from datetime import timedelta

import pytest

from memkeep.memory.models import MemoryRecord, MemoryTier
from memkeep.memory.relevance import filter_relevant, is_incomplete, position_boost, relevance_score
from memkeep.utils.helpers import utc_now

OLD = (utc_now() - timedelta(days=30)).isoformat()


def _record(content: str, **kwargs) -> MemoryRecord:
    kwargs.setdefault("updated_at", OLD)
    return MemoryRecord(id=content[:12], user_id="u1", content=content, **kwargs)


@pytest.mark.parametrize(
    ("content", "boost"),
    [
        ("seats by the window", 1.5),
        ("I like seats near the front door", 1.2),
        ("We talked for ages and then about seats", 1.0),
        ("nothing relevant", 0.0),
    ],
)
def test_position_boost(content: str, boost: float) -> None:
    assert position_boost(content, "seats") == boost


@pytest.mark.parametrize(
    ("content", "incomplete"),
    [
        ("My favorite color is", True),
        ("my favourite food", True),
        ("My dog's name is Max", False),
        ("My favorite color is blue", False),
        ("I prefer window seats", False),
    ],
)
def test_is_incomplete(content: str, incomplete: bool) -> None:
    assert is_incomplete(content) is incomplete


def test_relevance_score_is_capped() -> None:
    record = _record("seats first", tier=MemoryTier.TIER1, priority=0.95, updated_at=utc_now().isoformat())
    assert relevance_score(record, ["seats"], 1.0) == 1.0


def test_rows_without_keyword_hits_are_dropped() -> None:
    window = _record("I prefer window seats")
    weather = _record("The weather in Lisbon was lovely")
    assert filter_relevant([window, weather], ["seats"]) == [window]


def test_tier1_keyword_hit_survives_low_score() -> None:
    filler = [_record(f"unrelated note number {n}") for n in range(3)]
    content = "We talked for a long while about trips and then seats"
    keywords = ["seats", "hotel", "budget", "visa"]

    passive = filter_relevant([*filler, _record(content)], keywords)
    pinned = _record(content, tier=MemoryTier.TIER1)
    kept = filter_relevant([*filler, pinned], keywords)

    assert passive == []
    assert kept == [pinned]


def test_incomplete_statements_are_dropped() -> None:
    empty = _record("My favorite color is", tier=MemoryTier.TIER1)
    full = _record("My favorite color is blue")
    assert filter_relevant([empty, full], ["color"]) == [full]


def test_no_keywords_keeps_everything() -> None:
    records = [_record("My favorite color is"), _record("The weather in Lisbon was lovely")]
    assert filter_relevant(records, []) == records


def test_threshold_is_configurable() -> None:
    weather = _record("The weather in Lisbon was lovely")
    assert filter_relevant([weather], ["seats"], min_relevance=0.0) == [weather]
    assert filter_relevant([weather], ["seats"], min_relevance=0.25) == []

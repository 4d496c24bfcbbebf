import pytest

from memkeep.memory.models import MemoryRecord
from memkeep.memory.similarity import DedupEngine, detect_topic, similarity


def test_similarity_exact_containment_and_unrelated() -> None:
    assert similarity("I like green tea", "i like  green tea") == 1.0
    assert similarity("I like green tea", "I like green tea with honey") == 0.9
    assert similarity("I like green tea", "The build server runs nightly") < 0.4
    assert similarity("", "anything") == 0.0


def test_similarity_blends_jaccard_and_length() -> None:
    # tokens {green, tea, mornings} vs {green, tea, evenings}
    score = similarity("green tea mornings", "green tea evenings")
    assert score == pytest.approx(0.7 * (2 / 4) + 0.3 * 1.0)


def test_similarity_counts_stop_words() -> None:
    # tokens {i, like, tea} vs {i, like, coffee}
    score = similarity("I like tea", "I like coffee")
    assert score == pytest.approx(0.7 * (2 / 4) + 0.3 * (10 / 13))


@pytest.mark.parametrize(
    ("text", "topic"),
    [
        ("My favorite color is red", "my favorite color"),
        ("my favourite food is ramen", "my favorite food"),
        ("My dog's name is Max", "my dog's name"),
        ("I prefer tea over coffee", "prefer tea"),
        ("I work remotely on Fridays", "i work remotely on"),
        ("The weather was nice today", None),
    ],
)
def test_detect_topic(text: str, topic: str | None) -> None:
    assert detect_topic(text) == topic


def test_dedup_prefers_topic_match(store) -> None:
    red = store.insert(MemoryRecord(id="", user_id="u1", content="My favorite color is red", topic="my favorite color"))
    store.insert(MemoryRecord(id="", user_id="u1", content="I have a standup at 9 every day"))

    engine = DedupEngine(store)
    match = engine.find_match("u1", "My favorite color is blue")
    assert match is not None
    assert match.by_topic
    assert match.record.id == red.id

    assert engine.find_match("u2", "My favorite color is blue") is None


def test_dedup_text_match_respects_threshold(store) -> None:
    original = store.insert(MemoryRecord(id="", user_id="u1", content="standup meeting happens every weekday morning"))

    engine = DedupEngine(store, threshold=0.75)
    found = engine.find_similar("u1", "standup meeting happens every weekday morning at nine")
    assert found is not None
    assert found.id == original.id
    assert engine.find_similar("u1", "lunch is usually around noon") is None

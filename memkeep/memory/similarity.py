"""Topic extraction and similarity-based duplicate detection."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from loguru import logger

from memkeep.memory.text import normalize, tokenize

if TYPE_CHECKING:
    from memkeep.memory.models import MemoryRecord
    from memkeep.memory.store import MemoryStore

DEFAULT_THRESHOLD = 0.75
DEFAULT_WINDOW = 50

_PREFERENCE_CUT = re.compile(r"\s+(?:over|instead of|rather than)\b")


def _attribute_topic(match: re.Match[str]) -> str:
    favorite = "favorite " if match.group(1) else ""
    return f"my {favorite}{match.group(2).strip()}"


def _preference_topic(match: re.Match[str]) -> str:
    thing = _PREFERENCE_CUT.split(match.group(2))[0].strip()
    return f"{match.group(1)} {thing[:50]}"


def _statement_topic(match: re.Match[str]) -> str:
    words = match.group(0).split()
    return " ".join(words[:4])


def _self_topic(match: re.Match[str]) -> str | None:
    subject = match.group(2).strip()
    if len(subject) >= 100:
        return None
    return subject[:50]


# (name, pattern, topic builder); first hit wins. Patterns run on lower-cased text.
TOPIC_PATTERNS: tuple[tuple[str, re.Pattern[str], Callable[[re.Match[str]], str | None]], ...] = (
    (
        "attribute",
        re.compile(r"\bmy\s+(favou?rite\s+)?([\w']+(?:\s+[\w']+)?)\s+(?:is|are|was|were)\s+(.+)"),
        _attribute_topic,
    ),
    (
        "preference",
        re.compile(r"\bi\s+(prefer|like|want|need|always|never)\s+(.+)"),
        _preference_topic,
    ),
    (
        "statement",
        re.compile(r"^i\s+(?:work|live|study|use)\b.*"),
        _statement_topic,
    ),
    (
        "self",
        re.compile(r"^(my|i am|i'm)\s+(.+?)(?:\s+[-–—]|\s+for\s+me|$)"),
        _self_topic,
    ),
)


def detect_topic(content: str) -> str | None:
    """Structural subject of a personal fact, e.g. ``my favorite color``."""
    lower = normalize(content).rstrip(".!")
    for _, pattern, build in TOPIC_PATTERNS:
        match = pattern.search(lower)
        if match:
            topic = build(match)
            if topic:
                return topic
    return None


def similarity(a: str, b: str) -> float:
    """Blend of word-token Jaccard overlap (0.7) and length ratio (0.3).

    Exact matches score 1.0 and containment of one string in the other
    scores 0.9 when both are longer than 10 characters.
    """
    left = normalize(a)
    right = normalize(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    if len(left) > 10 and len(right) > 10 and (left in right or right in left):
        return 0.9

    left_words = set(tokenize(left))
    right_words = set(tokenize(right))
    union = left_words | right_words
    jaccard = len(left_words & right_words) / len(union) if union else 0.0
    length_ratio = min(len(left), len(right)) / max(len(left), len(right))
    return 0.7 * jaccard + 0.3 * length_ratio


@dataclass(slots=True)
class DedupMatch:
    record: "MemoryRecord"
    similarity: float
    by_topic: bool


class DedupEngine:
    """Finds the live record a new candidate should supersede."""

    def __init__(
        self,
        store: "MemoryStore",
        *,
        threshold: float = DEFAULT_THRESHOLD,
        window: int = DEFAULT_WINDOW,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.window = window

    def find_similar(
        self,
        user_id: str,
        candidate_text: str,
        threshold: float | None = None,
    ) -> "MemoryRecord | None":
        match = self.find_match(user_id, candidate_text, threshold)
        return match.record if match else None

    def find_match(
        self,
        user_id: str,
        candidate_text: str,
        threshold: float | None = None,
        topic: str | None = None,
    ) -> DedupMatch | None:
        limit = self.threshold if threshold is None else threshold
        candidates = self.store.recent_for_user(user_id, limit=self.window)
        if not candidates:
            return None

        topic = topic or detect_topic(candidate_text)
        if topic:
            for record in candidates:
                record_topic = record.topic or detect_topic(record.content)
                if record_topic and record_topic == topic:
                    logger.debug("dedup topic match user={} topic={} record={}", user_id, topic, record.id)
                    return DedupMatch(record=record, similarity=1.0, by_topic=True)

        best: DedupMatch | None = None
        for record in candidates:
            score = similarity(candidate_text, record.content)
            if score >= limit and (best is None or score > best.similarity):
                best = DedupMatch(record=record, similarity=score, by_topic=False)
        if best is not None:
            logger.debug(
                "dedup text match user={} similarity={:.2f} record={}",
                user_id,
                best.similarity,
                best.record.id,
            )
        return best

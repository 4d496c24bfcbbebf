"""Quality scoring and tier classification for capture candidates."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from memkeep.memory.models import MemoryTier
from memkeep.memory.text import keywords
from memkeep.utils.helpers import parse_iso, utc_now

if TYPE_CHECKING:
    from memkeep.memory.tracker import CrossThreadTracker

WEIGHTS = {"relevance": 0.4, "importance": 0.3, "clarity": 0.2, "freshness": 0.1}

RELEVANCE_KEYWORDS = (
    "prefer", "like", "want", "need", "always", "never", "remember",
    "important", "critical", "must", "should", "requirement", "constraint",
    "use", "avoid", "implement", "design", "architecture", "pattern",
)
ENTITY_MARKERS = re.compile(r"@\w|#\w|https?://|\.(?:com|org|io)\b", re.IGNORECASE)
STRONG_WORDS = ("always", "never", "must", "critical", "important", "requirement", "allergic")
DECISION_WORDS = ("decided", "chosen", "selected", "prefer", "use", "plan", "goal")
_CAPITALIZED = re.compile(r"\b[A-Z][a-z]+")
_DIGITS = re.compile(r"\d")

TIER2_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(prefer|like|want|need|always|never)\b", re.IGNORECASE),
    re.compile(r"\b(goal|objective|aim|target|plan)\b", re.IGNORECASE),
    re.compile(r"\b(avoid|use|require|must|should)\b", re.IGNORECASE),
    re.compile(r"\b(setting|preference|config|option)\b", re.IGNORECASE),
)


@dataclass(slots=True)
class ScoringContext:
    """What the scorer knows about the turn a candidate came from."""

    role: str = "user"
    conversation_context: str = ""
    thread_started_at: str | None = None
    observed_at: str | None = None


@dataclass(slots=True)
class QualityBreakdown:
    relevance: float
    importance: float
    clarity: float
    freshness: float

    @property
    def total(self) -> float:
        q = (
            WEIGHTS["relevance"] * self.relevance
            + WEIGHTS["importance"] * self.importance
            + WEIGHTS["clarity"] * self.clarity
            + WEIGHTS["freshness"] * self.freshness
        )
        return _clamp(q)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _has_named_entity(text: str) -> bool:
    """Capitalized word that does not open a sentence."""
    for match in _CAPITALIZED.finditer(text):
        before = text[: match.start()].rstrip()
        if before and before[-1] not in ".!?":
            return True
    return False


class QualityScorer:
    """Computes ``Q = 0.4r + 0.3i + 0.2c + 0.1h`` for a candidate."""

    def score(self, text: str, context: ScoringContext | None = None) -> float:
        return self.breakdown(text, context).total

    def breakdown(self, text: str, context: ScoringContext | None = None) -> QualityBreakdown:
        ctx = context or ScoringContext()
        return QualityBreakdown(
            relevance=self._relevance(text, ctx),
            importance=self._importance(text, ctx),
            clarity=self._clarity(text),
            freshness=self._freshness(ctx),
        )

    @staticmethod
    def _relevance(text: str, ctx: ScoringContext) -> float:
        lower = text.lower()
        score = 0.3
        score += min(0.3, 0.05 * len(ENTITY_MARKERS.findall(text)))
        score += min(0.3, 0.05 * sum(1 for word in RELEVANCE_KEYWORDS if word in lower))
        if ctx.conversation_context:
            shared = keywords(text) & keywords(ctx.conversation_context)
            score += min(0.2, 0.05 * len(shared))
        if len(text) > 100:
            score += 0.1
        if len(text) > 300:
            score += 0.1
        if ctx.role == "user":
            score += 0.1
        return _clamp(score)

    @staticmethod
    def _importance(text: str, ctx: ScoringContext) -> float:
        lower = text.lower()
        score = 0.2
        if any(word in lower for word in STRONG_WORDS):
            score += 0.4
        if any(word in lower for word in DECISION_WORDS):
            score += 0.2
        if "?" in text:
            score += 0.1
        if _DIGITS.search(text) or _has_named_entity(text.strip()):
            score += 0.1
        if ctx.role == "user":
            score += 0.1
        return _clamp(score)

    @staticmethod
    def _clarity(text: str) -> float:
        stripped = text.strip()
        score = 0.3
        if 20 < len(stripped) < 500:
            score += 0.3
        elif len(stripped) >= 500:
            score += 0.2
        if re.search(r"[.!?]", stripped):
            score += 0.2
        if re.search(r"[A-Z]", stripped):
            score += 0.1
        if not stripped.endswith("...") and "[truncated]" not in stripped:
            score += 0.1
        return _clamp(score)

    @staticmethod
    def _freshness(ctx: ScoringContext) -> float:
        if not ctx.thread_started_at:
            return 0.8
        started = parse_iso(ctx.thread_started_at)
        observed = parse_iso(ctx.observed_at) if ctx.observed_at else utc_now()
        now = utc_now()
        duration = max((now - started).total_seconds(), 60.0)
        age = max((now - observed).total_seconds(), 0.0)
        return max(0.1, 1.0 - age / duration)


class TierClassifier:
    """Pattern-based tier assignment.

    Topics the cross-thread tracker has seen in enough threads are TIER1;
    preference, goal, constraint and setting vocabulary is TIER2; anything
    else is TIER3.
    """

    def __init__(self, tracker: "CrossThreadTracker | None" = None) -> None:
        self.tracker = tracker

    def classify(self, text: str, user_id: str | None = None, topic: str | None = None) -> MemoryTier:
        if self.tracker is not None and user_id and topic and self.tracker.is_repeated(user_id, topic):
            return MemoryTier.TIER1
        if any(pattern.search(text) for pattern in TIER2_PATTERNS):
            return MemoryTier.TIER2
        return MemoryTier.TIER3

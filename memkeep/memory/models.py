"""Typed models for memory capture and recall."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from memkeep.utils.helpers import utc_now_iso

MemorySource = Literal["explicit", "passive", "manual"]
SpeakerRole = Literal["user", "assistant"]


class MemoryTier(str, Enum):
    """Retention class; TIER1 outranks TIER2 outranks TIER3."""

    TIER1 = "TIER1"
    TIER2 = "TIER2"
    TIER3 = "TIER3"

    @property
    def rank(self) -> int:
        return TIER_RANK[self]

    @property
    def config_key(self) -> str:
        return self.value.lower()

    def outranks(self, other: "MemoryTier") -> bool:
        return self.rank < other.rank


TIER_RANK: dict[MemoryTier, int] = {
    MemoryTier.TIER1: 1,
    MemoryTier.TIER2: 2,
    MemoryTier.TIER3: 3,
}


def best_tier(a: MemoryTier, b: MemoryTier) -> MemoryTier:
    """Return the higher-ranked of two tiers."""
    return a if a.rank <= b.rank else b


class CaptureState(str, Enum):
    RECEIVED = "received"
    REDACTED = "redacted"
    DEDUP_CHECKED = "dedup_checked"
    INSERTED = "inserted"
    SUPERSEDED = "superseded"
    REJECTED = "rejected"
    DROPPED = "dropped"


@dataclass(slots=True)
class MemoryRecord:
    """One stored memory record."""

    id: str
    user_id: str
    content: str
    thread_id: str | None = None
    source_thread_id: str | None = None
    redaction_map: dict[str, str] = field(default_factory=dict)
    tier: MemoryTier = MemoryTier.TIER3
    priority: float = 0.5
    confidence: float = 0.8
    repeats: int = 1
    thread_set: set[str] = field(default_factory=set)
    topic: str | None = None
    source: MemorySource = "passive"
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    last_seen_ts: str = field(default_factory=utc_now_iso)
    deleted_at: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(slots=True)
class CaptureEvent:
    """A conversational signal handed to the capture pipeline.

    Explicit events carry an already-extracted ``content`` string; passive
    events carry the raw ``content`` of a turn plus its conversation context.
    """

    user_id: str
    content: str
    explicit: bool = False
    thread_id: str | None = None
    conversation_context: str = ""
    role: SpeakerRole = "user"
    thread_started_at: str | None = None


@dataclass(slots=True)
class CaptureOutcome:
    """Terminal state of one capture event."""

    state: CaptureState
    record: MemoryRecord | None = None
    reason: str | None = None
    score: float | None = None
    history: list[CaptureState] = field(default_factory=list)

    @property
    def stored(self) -> bool:
        return self.state in {CaptureState.INSERTED, CaptureState.SUPERSEDED}


@dataclass(slots=True)
class RecallResult:
    """Deadline-bounded recall answer."""

    memories: list[MemoryRecord] = field(default_factory=list)
    elapsed_ms: float = 0.0
    timed_out: bool = False


@dataclass(slots=True)
class RetentionReport:
    """Counts from one retention pass."""

    expired: int = 0
    decayed: int = 0
    promoted: int = 0
    demoted: int = 0
    purged: int = 0
    ran_at: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class MemoryAudit:
    """One row of the audit trail."""

    record_id: str
    action: str
    detail: dict[str, object]
    created_at: str

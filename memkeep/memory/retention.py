"""Tier retention: expiry, weekly decay, promotion and demotion."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from loguru import logger

from memkeep.memory.models import MemoryTier, RetentionReport
from memkeep.utils.helpers import parse_iso, utc_now

if TYPE_CHECKING:
    from memkeep.config.schema import MemoryRetentionConfig
    from memkeep.memory.store import MemoryStore

LAST_RUN_KEY = "retention.last_run"
_SECONDS_PER_DAY = 86400.0

_DEMOTE_TO: dict[MemoryTier, MemoryTier] = {
    MemoryTier.TIER1: MemoryTier.TIER2,
    MemoryTier.TIER2: MemoryTier.TIER3,
}


def _tier_table(values: dict[str, float]) -> dict[MemoryTier, float]:
    return {tier: float(values[tier.config_key]) for tier in MemoryTier}


@dataclass(slots=True)
class RetentionPolicy:
    ttl_days: dict[MemoryTier, float] = field(
        default_factory=lambda: {MemoryTier.TIER1: 365, MemoryTier.TIER2: 180, MemoryTier.TIER3: 90}
    )
    weekly_decay: dict[MemoryTier, float] = field(
        default_factory=lambda: {MemoryTier.TIER1: 0.01, MemoryTier.TIER2: 0.005, MemoryTier.TIER3: 0.02}
    )
    priority_floor: dict[MemoryTier, float] = field(
        default_factory=lambda: {MemoryTier.TIER1: 0.35, MemoryTier.TIER2: 0.5, MemoryTier.TIER3: 0.3}
    )
    promotion_min_threads: int = 3
    promotion_min_repeats: int = 3
    purge_grace_days: float = 30

    @classmethod
    def from_config(cls, config: "MemoryRetentionConfig") -> "RetentionPolicy":
        return cls(
            ttl_days=_tier_table(config.ttl_days),
            weekly_decay=_tier_table(config.weekly_decay),
            priority_floor=_tier_table(config.priority_floor),
            promotion_min_threads=config.promotion_min_threads,
            promotion_min_repeats=config.promotion_min_repeats,
            purge_grace_days=config.purge_grace_days,
        )


def _days_between(earlier: str, now: datetime) -> float:
    return (now - parse_iso(earlier)).total_seconds() / _SECONDS_PER_DAY


def run_retention(
    store: "MemoryStore",
    policy: RetentionPolicy | None = None,
    *,
    now: datetime | None = None,
) -> RetentionReport:
    """One retention pass over every live record.

    Decay is proportional to the weeks since the previous pass and leaves
    ``updated_at`` untouched, so it never resets a record's TTL clock.
    """
    policy = policy or RetentionPolicy()
    now = now or utc_now()
    report = RetentionReport(ran_at=now.isoformat(timespec="microseconds"))

    last_run = store.get_meta(LAST_RUN_KEY)
    weeks = max(0.0, _days_between(last_run, now) / 7.0) if last_run else 0.0

    for record in store.iter_live():
        if _days_between(record.updated_at, now) > policy.ttl_days[record.tier]:
            if store.soft_delete(record.id, reason="expired"):
                report.expired += 1
            continue

        priority = record.priority
        if weeks > 0:
            decayed = max(0.0, priority - policy.weekly_decay[record.tier] * weeks)
            if decayed < priority:
                store.set_priority(record.id, decayed, action="decay")
                priority = decayed
                report.decayed += 1

        if (
            record.tier != MemoryTier.TIER1
            and len(record.thread_set) >= policy.promotion_min_threads
            and record.repeats >= policy.promotion_min_repeats
        ):
            store.set_tier(record.id, MemoryTier.TIER1, action="promote")
            report.promoted += 1
            continue

        lower = _DEMOTE_TO.get(record.tier)
        if lower is not None and priority < policy.priority_floor[record.tier]:
            store.set_tier(record.id, lower, action="demote")
            report.demoted += 1
            logger.info(
                "memory demoted id={} user={} {}->{} priority={:.3f}",
                record.id,
                record.user_id,
                record.tier.value,
                lower.value,
                priority,
            )

    report.purged = store.purge_deleted(policy.purge_grace_days, now=now)
    store.set_meta(LAST_RUN_KEY, report.ran_at)
    logger.info(
        "memory retention expired={} decayed={} promoted={} demoted={} purged={}",
        report.expired,
        report.decayed,
        report.promoted,
        report.demoted,
        report.purged,
    )
    return report

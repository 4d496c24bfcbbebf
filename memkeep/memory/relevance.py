"""Relevance post-filter for query-driven recall."""

from __future__ import annotations

import re
from datetime import datetime

from loguru import logger

from memkeep.memory.models import MemoryRecord, MemoryTier
from memkeep.utils.helpers import parse_iso, utc_now

DEFAULT_MIN_RELEVANCE = 0.25

TIER_BOOST = {MemoryTier.TIER1: 1.2, MemoryTier.TIER2: 1.1, MemoryTier.TIER3: 1.0}
# (minimum priority, boost); first hit wins.
PRIORITY_BOOST = ((0.9, 1.2), (0.8, 1.1), (0.7, 1.05))
# (maximum age in hours, boost); first hit wins.
RECENCY_BOOST = ((24.0, 1.1), (168.0, 1.05))

_ATTRIBUTE = re.compile(r"my\s+(favou?rite\s+)?(\w+(?:\s+\w+)?)\s+(?:is|are|was|were)\b\s*(.*)")
_BARE_ATTRIBUTE = re.compile(r"^my\s+(favou?rite\s+)?(\w+(?:\s+\w+)?)$")


def position_boost(content: str, keyword: str) -> float:
    """1.5 for a hit in the first 20% of the content, 1.2 before half, 1.0 after, 0 on a miss."""
    lower = content.lower()
    position = lower.find(keyword.lower())
    if position < 0:
        return 0.0
    relative = position / max(len(content), 1)
    if relative < 0.2:
        return 1.5
    if relative < 0.5:
        return 1.2
    return 1.0


def _first_boost(value: float, table: tuple[tuple[float, float], ...], above: bool) -> float:
    for limit, boost in table:
        if (value >= limit) if above else (value < limit):
            return boost
    return 1.0


def relevance_score(
    record: MemoryRecord,
    keywords: list[str],
    base_score: float,
    now: datetime | None = None,
) -> float:
    score = base_score
    if keywords:
        score *= sum(position_boost(record.content, kw) for kw in keywords) / len(keywords)
    score *= TIER_BOOST.get(record.tier, 1.0)
    score *= _first_boost(record.priority, PRIORITY_BOOST, above=True)
    age_hours = ((now or utc_now()) - parse_iso(record.updated_at)).total_seconds() / 3600.0
    score *= _first_boost(age_hours, RECENCY_BOOST, above=False)
    return min(1.0, score)


def is_incomplete(content: str) -> bool:
    """An attribute statement with no value, e.g. "my favorite color"."""
    lower = content.strip().lower()
    match = _ATTRIBUTE.search(lower)
    if match:
        return len(match.group(3).strip()) < 2
    return _BARE_ATTRIBUTE.match(lower) is not None


def filter_relevant(
    records: list[MemoryRecord],
    keywords: list[str],
    min_relevance: float = DEFAULT_MIN_RELEVANCE,
) -> list[MemoryRecord]:
    """Drop low-relevance and incomplete records, keeping the input order.

    Rank scores fall linearly from 1.0 for the first record to 0.5 for the
    last. TIER1 records with any keyword hit are always kept.
    """
    if not keywords or not records:
        return list(records)

    now = utc_now()
    total = len(records)
    kept: list[MemoryRecord] = []
    for index, record in enumerate(records):
        lower = record.content.lower()
        if is_incomplete(record.content):
            logger.debug("memory recall skipped incomplete record={}", record.id)
            continue
        if record.tier == MemoryTier.TIER1 and any(kw in lower for kw in keywords):
            kept.append(record)
            continue
        score = relevance_score(record, keywords, 1.0 - (index / total) * 0.5, now)
        if score >= min_relevance:
            kept.append(record)

    if len(kept) < total:
        logger.debug("memory recall filtered {} of {} candidates", total - len(kept), total)
    return kept

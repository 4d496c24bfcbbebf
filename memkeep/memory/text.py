"""Shared text helpers: tokenization, keywords, normalization."""

from __future__ import annotations

import re

STOP_WORDS: frozenset[str] = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "been", "but", "by", "can", "could",
        "did", "do", "does", "for", "from", "had", "has", "have", "he", "her", "his",
        "how", "i", "if", "in", "into", "is", "it", "its", "me", "my", "of", "on", "or",
        "our", "she", "so", "that", "the", "their", "them", "then", "there", "these",
        "they", "this", "to", "was", "we", "were", "what", "when", "where", "which",
        "who", "why", "will", "with", "would", "you", "your", "about", "remember",
        "tell", "know", "what's", "whats",
    }
)

_WORD_RE = re.compile(r"\b[\w']+\b")
_QUERY_WORD_RE = re.compile(r"\b\w{2,}\b")


def normalize(text: str) -> str:
    """Lower-case and collapse whitespace."""
    return " ".join(text.lower().split())


def tokenize(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


def keywords(text: str, min_len: int = 3) -> set[str]:
    """Content words of ``text``; stop words removed.

    Falls back to every token when nothing survives the filter.
    """
    tokens = tokenize(text)
    picked = {t for t in tokens if len(t) >= min_len and t not in STOP_WORDS}
    if picked:
        return picked
    return set(tokens)


def query_keywords(query: str, limit: int = 16) -> list[str]:
    """Ordered, de-duplicated query keywords (length >= 2, no stop words)."""
    out: list[str] = []
    seen: set[str] = set()
    for token in _QUERY_WORD_RE.findall(query.lower()):
        if token in STOP_WORDS or token in seen:
            continue
        seen.add(token)
        out.append(token)
        if len(out) >= limit:
            break
    return out


def compact(text: str, limit: int) -> str:
    """Collapse whitespace and cut to ``limit`` chars with an ellipsis."""
    collapsed = " ".join(text.split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: limit - 3] + "..."

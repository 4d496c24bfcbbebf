"""Pattern-based PII redaction with reversible placeholders."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable

PLACEHOLDER_RE = re.compile(r"\[[A-Z][A-Z_]*_REDACTED(?:_\d+)?\]")


def _is_public_ipv4(value: str) -> bool:
    octets = value.split(".")
    if any(int(octet) > 255 for octet in octets):
        return False
    if value == "127.0.0.1" or value.startswith("10.") or value.startswith("192.168."):
        return False
    return True


def _looks_like_token(value: str) -> bool:
    # Long plain words are not credentials.
    return not value.replace("-", "").replace("_", "").isalpha()


@dataclass(frozen=True, slots=True)
class Detector:
    """One row of the redaction table."""

    name: str
    pattern: re.Pattern[str]
    label: str
    accept: Callable[[str], bool] | None = None


# Applied in order; earlier rows win on overlapping spans.
DETECTORS: tuple[Detector, ...] = (
    Detector(
        "jwt",
        re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"),
        "JWT",
    ),
    Detector(
        "provider_secret",
        re.compile(
            r"(?:\bsk-(?:proj-)?[A-Za-z0-9_-]{20,}|\bAKIA[0-9A-Z]{16}\b|\bghp_[A-Za-z0-9]{20,}|"
            r"\bBearer\s+[A-Za-z0-9._~+/-]{16,}=*)"
        ),
        "API_KEY",
    ),
    Detector(
        "email",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "EMAIL",
    ),
    Detector(
        "card",
        re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"),
        "CARD",
    ),
    Detector(
        "ssn",
        re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
        "SSN",
    ),
    Detector(
        "phone",
        re.compile(r"(?<![\w+])(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"),
        "PHONE",
    ),
    Detector(
        "ipv4",
        re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"),
        "IP",
        accept=_is_public_ipv4,
    ),
    Detector(
        "api_key",
        re.compile(r"(?<![\w-])[A-Za-z0-9_-]{32,}(?![\w-])"),
        "API_KEY",
        accept=_looks_like_token,
    ),
)


@dataclass(slots=True)
class RedactionResult:
    """Redacted text plus placeholder → original value map."""

    text: str
    placeholders: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.placeholders)


class Redactor:
    """Applies an ordered detector table to free text.

    Each distinct sensitive value gets a stable placeholder within one call:
    ``[EMAIL_REDACTED]``, then ``[EMAIL_REDACTED_2]`` for a second address.
    Placeholders already present in the input are never reissued, so
    redacting redacted text is a no-op.
    """

    def __init__(self, detectors: tuple[Detector, ...] = DETECTORS) -> None:
        self.detectors = detectors

    def redact(self, text: str) -> RedactionResult:
        if not text:
            return RedactionResult(text=text or "")

        taken = set(PLACEHOLDER_RE.findall(text))
        by_value: dict[str, str] = {}
        placeholders: dict[str, str] = {}
        counters: dict[str, int] = {}

        def assign(label: str, value: str) -> str:
            existing = by_value.get(value)
            if existing is not None:
                return existing
            n = counters.get(label, 0)
            while True:
                n += 1
                token = f"[{label}_REDACTED]" if n == 1 else f"[{label}_REDACTED_{n}]"
                if token not in taken:
                    break
            counters[label] = n
            taken.add(token)
            by_value[value] = token
            placeholders[token] = value
            return token

        redacted = text
        for detector in self.detectors:

            def _sub(match: re.Match[str], detector: Detector = detector) -> str:
                value = match.group(0)
                if detector.accept is not None and not detector.accept(value):
                    return value
                return assign(detector.label, value)

            redacted = detector.pattern.sub(_sub, redacted)

        return RedactionResult(text=redacted, placeholders=placeholders)


_default = Redactor()


def redact(text: str) -> RedactionResult:
    """Redact ``text`` with the default detector table."""
    return _default.redact(text)


def is_fully_redacted(text: str) -> bool:
    """True when only placeholders (plus punctuation/space) remain."""
    if not PLACEHOLDER_RE.search(text):
        return False
    remainder = PLACEHOLDER_RE.sub(" ", text)
    return not any(ch.isalnum() for ch in remainder)


def restore(text: str, placeholders: dict[str, str]) -> str:
    """Put original values back in place of their placeholders."""
    restored = text
    for token in sorted(placeholders, key=len, reverse=True):
        restored = restored.replace(token, placeholders[token])
    return restored

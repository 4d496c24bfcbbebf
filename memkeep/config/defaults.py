"""Canonical runtime defaults for memkeep config."""

from __future__ import annotations

from typing import Any

DEFAULT_MEMORY: dict[str, Any] = {
    "enabled": True,
    "db_path": "memory/memories.db",
    "max_content_chars": 1024,
    "dedup": {
        "threshold": 0.75,
        "window": 50,
    },
    "scoring": {
        "tier1_threshold": 0.62,
        "tier2_threshold": 0.70,
        "tier3_threshold": 0.70,
        "explicit_priority": 0.9,
        "explicit_confidence": 0.8,
        "passive_confidence": 0.8,
    },
    "capture": {
        "enabled": True,
        "workers": 2,
        "queue_maxsize": 256,
        "max_attempts": 3,
        "base_backoff_ms": 100,
    },
    "recall": {
        "default_deadline_ms": 200,
        "max_deadline_ms": 500,
        "default_max_items": 10,
        "max_items": 20,
        "recency_window_hours": 24,
        "min_relevance": 0.25,
        "max_prompt_chars": 2400,
        "pool_workers": 4,
    },
    "tracker": {
        "max_topics_per_user": 500,
        "max_users": 10000,
        "repeat_threshold": 3,
    },
    "retention": {
        "ttl_days": {"tier1": 365, "tier2": 180, "tier3": 90},
        "weekly_decay": {"tier1": 0.01, "tier2": 0.005, "tier3": 0.02},
        "priority_floor": {"tier1": 0.35, "tier2": 0.5, "tier3": 0.3},
        "promotion_min_threads": 3,
        "promotion_min_repeats": 3,
        "purge_grace_days": 30,
    },
    "profile": {
        "cache_size": 1000,
        "ttl_seconds": 300,
    },
}

DEFAULT_TELEMETRY: dict[str, Any] = {
    "backend": "none",
    "host": "127.0.0.1",
    "port": 9464,
}


"""Derived user profiles and their invalidation signal."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

from loguru import logger

from memkeep.memory.models import MemoryRecord, MemoryTier
from memkeep.utils.helpers import utc_now_iso

PROFILE_TIERS = (MemoryTier.TIER1, MemoryTier.TIER2)


@dataclass(slots=True)
class ProfileInvalidated:
    """Emitted when a TIER1/TIER2 record is created or superseded."""

    user_id: str
    record_id: str
    tier: MemoryTier
    action: str
    at: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class UserProfile:
    """Stable facts about a user, built from their TIER1/TIER2 records."""

    user_id: str
    facts: list[str] = field(default_factory=list)
    preferences: list[str] = field(default_factory=list)
    built_at: str = field(default_factory=utc_now_iso)


ProfileListener = Callable[[ProfileInvalidated], None]


class ProfileEvents:
    """Synchronous fan-out of invalidation events to subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[ProfileListener] = []

    def subscribe(self, callback: ProfileListener) -> Callable[[], None]:
        """Register ``callback``; the returned function unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, event: ProfileInvalidated) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:
                logger.error("profile invalidation subscriber failed user={}: {}", event.user_id, exc)


class ProfileCache:
    """LRU of derived profiles with a time-to-live."""

    def __init__(self, *, max_size: int = 1000, ttl_seconds: float = 300.0) -> None:
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, tuple[float, UserProfile]] = OrderedDict()

    def get(self, user_id: str) -> UserProfile | None:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            stored_at, profile = entry
            if self.ttl_seconds and time.monotonic() - stored_at > self.ttl_seconds:
                del self._entries[user_id]
                return None
            self._entries.move_to_end(user_id)
            return profile

    def put(self, profile: UserProfile) -> None:
        with self._lock:
            self._entries[profile.user_id] = (time.monotonic(), profile)
            self._entries.move_to_end(profile.user_id)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def invalidate(self, user_id: str) -> bool:
        with self._lock:
            return self._entries.pop(user_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def build_profile(user_id: str, records: list[MemoryRecord]) -> UserProfile:
    profile = UserProfile(user_id=user_id)
    for record in records:
        if record.tier == MemoryTier.TIER1:
            profile.facts.append(record.content)
        elif record.tier == MemoryTier.TIER2:
            profile.preferences.append(record.content)
    return profile

"""Bounded per-user tracker of topics recurring across threads."""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass, field

from loguru import logger

from memkeep.utils.helpers import utc_now_iso


@dataclass(slots=True)
class TopicObservation:
    count: int = 0
    thread_ids: set[str] = field(default_factory=set)
    last_seen: str = field(default_factory=utc_now_iso)


class CrossThreadTracker:
    """LRU map of (user, topic) → observation, capped per user and overall.

    Losing an entry to eviction only costs the topic its repeat-detection
    advantage; nothing else depends on it.
    """

    def __init__(
        self,
        *,
        max_topics_per_user: int = 500,
        max_users: int = 10000,
        repeat_threshold: int = 3,
    ) -> None:
        self.max_topics_per_user = max_topics_per_user
        self.max_users = max_users
        self.repeat_threshold = repeat_threshold
        self._lock = threading.Lock()
        self._users: OrderedDict[str, OrderedDict[str, TopicObservation]] = OrderedDict()
        self._evictions = 0

    def observe(self, user_id: str, topic: str, thread_id: str | None) -> TopicObservation:
        """Record one sighting of ``topic`` and return the updated observation."""
        with self._lock:
            topics = self._users.get(user_id)
            if topics is None:
                topics = OrderedDict()
                self._users[user_id] = topics
                if len(self._users) > self.max_users:
                    self._users.popitem(last=False)
                    self._evictions += 1
            else:
                self._users.move_to_end(user_id)

            entry = topics.get(topic)
            if entry is None:
                entry = TopicObservation()
                topics[topic] = entry
                if len(topics) > self.max_topics_per_user:
                    evicted, _ = topics.popitem(last=False)
                    self._evictions += 1
                    logger.debug("tracker evicted topic user={} topic={}", user_id, evicted)
            else:
                topics.move_to_end(topic)

            entry.count += 1
            if thread_id:
                entry.thread_ids.add(thread_id)
            entry.last_seen = utc_now_iso()
            return TopicObservation(
                count=entry.count,
                thread_ids=set(entry.thread_ids),
                last_seen=entry.last_seen,
            )

    def thread_count(self, user_id: str, topic: str) -> int:
        with self._lock:
            entry = self._users.get(user_id, {}).get(topic)
            return len(entry.thread_ids) if entry else 0

    def is_repeated(self, user_id: str, topic: str) -> bool:
        return self.thread_count(user_id, topic) >= self.repeat_threshold

    def clear(self, user_id: str | None = None) -> None:
        with self._lock:
            if user_id is None:
                self._users.clear()
            else:
                self._users.pop(user_id, None)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "users": len(self._users),
                "topics": sum(len(topics) for topics in self._users.values()),
                "evictions": self._evictions,
            }

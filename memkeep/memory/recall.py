"""Deadline-bounded recall of a user's memories."""

from __future__ import annotations

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import TYPE_CHECKING

from loguru import logger

from memkeep.memory.models import MemoryRecord, RecallResult
from memkeep.memory.relevance import DEFAULT_MIN_RELEVANCE, filter_relevant
from memkeep.memory.text import query_keywords

if TYPE_CHECKING:
    from memkeep.memory.store import MemoryStore
    from memkeep.telemetry.base import TelemetryPort

HARD_MAX_DEADLINE_MS = 500
HARD_MAX_ITEMS = 20


class RecallEngine:
    """Answers recall queries within a caller-supplied time budget.

    The store query runs on a small thread pool and the caller waits on it
    for at most ``deadline_ms``. When the budget runs out the engine returns
    whatever rows were already read, flagged ``timed_out``. At most
    ``pool_workers`` queries are in flight; a recall that finds every slot
    busy returns empty at once instead of queueing behind a stalled store.
    Store failures are logged and answered with an empty result. ``recall``
    never raises.
    """

    def __init__(
        self,
        store: "MemoryStore",
        *,
        default_deadline_ms: int = 200,
        max_deadline_ms: int = HARD_MAX_DEADLINE_MS,
        default_max_items: int = 10,
        max_items: int = HARD_MAX_ITEMS,
        recency_window_hours: float = 24,
        min_relevance: float = DEFAULT_MIN_RELEVANCE,
        pool_workers: int = 4,
        telemetry: "TelemetryPort | None" = None,
    ) -> None:
        self.store = store
        self.max_deadline_ms = min(max_deadline_ms, HARD_MAX_DEADLINE_MS)
        self.default_deadline_ms = min(default_deadline_ms, self.max_deadline_ms)
        self.max_items = min(max_items, HARD_MAX_ITEMS)
        self.default_max_items = min(default_max_items, self.max_items)
        self.recency_window_hours = recency_window_hours
        self.min_relevance = min_relevance
        self.telemetry = telemetry
        workers = max(1, pool_workers)
        self._slots = threading.BoundedSemaphore(workers)
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="memory-recall")
        self._touch_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="memory-recall-touch")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._touch_executor.shutdown(wait=False, cancel_futures=True)

    def _clamp(self, max_items: int | None, deadline_ms: float | None) -> tuple[int, float]:
        items = self.default_max_items if max_items is None else int(max_items)
        items = max(1, min(items, self.max_items))
        budget = self.default_deadline_ms if deadline_ms is None else float(deadline_ms)
        if budget <= 0:
            budget = self.default_deadline_ms
        return items, min(budget, float(self.max_deadline_ms))

    def _collect(self, user_id: str, keywords: list[str], limit: int, sink: list[MemoryRecord]) -> None:
        for record in self.store.iter_recall_candidates(
            user_id,
            keywords,
            limit=limit,
            recency_window_hours=self.recency_window_hours,
        ):
            sink.append(record)

    def _touch(self, record_ids: list[str]) -> None:
        try:
            self.store.touch_last_seen(record_ids)
        except Exception as exc:
            logger.debug("memory recall could not update last_seen: {}", exc)

    def recall(
        self,
        user_id: str,
        query: str | None = None,
        thread_id: str | None = None,
        max_items: int | None = None,
        deadline_ms: float | None = None,
    ) -> RecallResult:
        """Return up to ``max_items`` memories for ``user_id``.

        ``thread_id`` is accepted for interface compatibility; recall is
        cross-thread and does not filter on it.
        """
        started = time.monotonic()
        items, budget_ms = self._clamp(max_items, deadline_ms)
        keywords = query_keywords(query) if query else []
        fetch = min(items * 2, HARD_MAX_ITEMS * 2) if keywords else items
        sink: list[MemoryRecord] = []
        timed_out = False
        status = "hit"

        if not self._slots.acquire(blocking=False):
            logger.warning("memory recall saturated user={}; returning empty", user_id)
            return self._result([], started, True, "saturated")

        try:
            future = self._executor.submit(self._collect, user_id, keywords, fetch, sink)
        except RuntimeError as exc:
            self._slots.release()
            logger.warning("memory recall degraded to empty user={}: {}", user_id, exc)
            return self._result([], started, False, "error")
        future.add_done_callback(lambda _: self._slots.release())

        try:
            remaining = budget_ms / 1000.0 - (time.monotonic() - started)
            future.result(timeout=max(0.0, remaining))
        except FutureTimeout:
            future.cancel()
            timed_out = True
            status = "timeout"
            logger.debug("memory recall timed out user={} budget_ms={} partial={}", user_id, budget_ms, len(sink))
        except Exception as exc:
            logger.warning("memory recall degraded to empty user={}: {}", user_id, exc)
            return self._result([], started, False, "error")

        memories = filter_relevant(list(sink), keywords, self.min_relevance)[:items]
        if memories:
            try:
                self._touch_executor.submit(self._touch, [m.id for m in memories])
            except RuntimeError as exc:
                logger.debug("memory recall skipped last_seen update: {}", exc)
        elif status == "hit":
            status = "miss"
        return self._result(memories, started, timed_out, status)

    def _result(self, memories: list[MemoryRecord], started: float, timed_out: bool, status: str) -> RecallResult:
        elapsed_s = time.monotonic() - started
        if self.telemetry is not None:
            self.telemetry.incr("recall_total", labels=(("status", status),))
            self.telemetry.timing("recall_duration_seconds", elapsed_s)
        return RecallResult(memories=memories, elapsed_ms=elapsed_s * 1000.0, timed_out=timed_out)

    async def arecall(
        self,
        user_id: str,
        query: str | None = None,
        thread_id: str | None = None,
        max_items: int | None = None,
        deadline_ms: float | None = None,
    ) -> RecallResult:
        """Async wrapper around :meth:`recall` for event-loop callers."""
        return await asyncio.to_thread(self.recall, user_id, query, thread_id, max_items, deadline_ms)

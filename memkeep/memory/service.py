"""Memory service facade used by chat runtimes and the CLI."""

from __future__ import annotations

import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from memkeep.memory.capture import CapturePipeline, CaptureSettings, CaptureWorkerPool
from memkeep.memory.errors import (
    CaptureFailedError,
    MemoryNotFoundError,
    MemoryOwnershipError,
    MemoryStateError,
    MemoryValidationError,
    TransientStorageError,
)
from memkeep.memory.models import (
    CaptureEvent,
    CaptureOutcome,
    CaptureState,
    MemoryAudit,
    MemoryRecord,
    MemoryTier,
    RecallResult,
    RetentionReport,
    SpeakerRole,
)
from memkeep.memory.profile import (
    PROFILE_TIERS,
    ProfileCache,
    ProfileEvents,
    ProfileInvalidated,
    ProfileListener,
    UserProfile,
    build_profile,
)
from memkeep.memory.recall import RecallEngine
from memkeep.memory.redaction import Redactor, is_fully_redacted, restore
from memkeep.memory.render import render_recall
from memkeep.memory.retention import RetentionPolicy, run_retention
from memkeep.memory.scoring import QualityScorer, TierClassifier
from memkeep.memory.similarity import DedupEngine, detect_topic
from memkeep.memory.store import MemoryStore
from memkeep.memory.tracker import CrossThreadTracker
from memkeep.utils.helpers import utc_now_iso

if TYPE_CHECKING:
    from memkeep.config.schema import Config, MemoryConfig
    from memkeep.telemetry.base import TelemetryPort


class MemoryService:
    """Capture, recall and record management over one memory store.

    Passive captures are queued to background workers and never block the
    caller. Explicit saves run in the calling thread and report failure.
    Recall is bounded by a deadline and never raises.
    """

    def __init__(
        self,
        config: "MemoryConfig",
        *,
        db_path: Path | None = None,
        telemetry: "TelemetryPort | None" = None,
        tracker: CrossThreadTracker | None = None,
        profile_cache: ProfileCache | None = None,
    ) -> None:
        self.config = config
        self.telemetry = telemetry
        self.db_path = (db_path or config.db_file).expanduser()
        self.store = MemoryStore(self.db_path, max_content_chars=config.max_content_chars)

        self.tracker = tracker or CrossThreadTracker(
            max_topics_per_user=config.tracker.max_topics_per_user,
            max_users=config.tracker.max_users,
            repeat_threshold=config.tracker.repeat_threshold,
        )
        self.profile_cache = profile_cache or ProfileCache(
            max_size=config.profile.cache_size,
            ttl_seconds=config.profile.ttl_seconds,
        )
        self.events = ProfileEvents()
        self.redactor = Redactor()
        self.dedup = DedupEngine(
            self.store,
            threshold=config.dedup.threshold,
            window=config.dedup.window,
        )
        self.pipeline = CapturePipeline(
            self.store,
            dedup=self.dedup,
            tracker=self.tracker,
            scorer=QualityScorer(),
            classifier=TierClassifier(self.tracker),
            redactor=self.redactor,
            settings=CaptureSettings.from_config(
                config.scoring,
                promotion_min_threads=config.retention.promotion_min_threads,
            ),
            profile_cache=self.profile_cache,
            events=self.events,
            telemetry=telemetry,
        )
        self.workers = CaptureWorkerPool(
            self.pipeline,
            workers=config.capture.workers,
            queue_maxsize=config.capture.queue_maxsize,
            max_attempts=config.capture.max_attempts,
            base_backoff_ms=config.capture.base_backoff_ms,
            telemetry=telemetry,
        )
        if config.capture.enabled:
            self.workers.start()
        self.recall_engine = RecallEngine(
            self.store,
            default_deadline_ms=config.recall.default_deadline_ms,
            max_deadline_ms=config.recall.max_deadline_ms,
            default_max_items=config.recall.default_max_items,
            max_items=config.recall.max_items,
            recency_window_hours=config.recall.recency_window_hours,
            min_relevance=config.recall.min_relevance,
            pool_workers=config.recall.pool_workers,
            telemetry=telemetry,
        )
        self.retention_policy = RetentionPolicy.from_config(config.retention)
        self._closed = False
        logger.debug("memory service ready db={}", self.db_path)

    @classmethod
    def from_config(cls, config: "Config", *, telemetry: "TelemetryPort | None" = None) -> "MemoryService":
        return cls(config.memory, telemetry=telemetry)

    def __enter__(self) -> "MemoryService":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.workers.close()
        self.recall_engine.close()
        self.store.close()
        logger.debug("memory service closed db={}", self.db_path)

    # ── capture ─────────────────────────────────────────────────────────

    def remember(self, user_id: str, content: str, *, thread_id: str | None = None) -> CaptureOutcome:
        """Explicit save. Raises when the memory could not be stored.

        Raises:
            MemoryValidationError: content empty or nothing but sensitive data.
            CaptureFailedError: storage stayed unavailable after retries.
        """
        return self._process_explicit(
            CaptureEvent(user_id=user_id, content=content, explicit=True, thread_id=thread_id)
        )

    def _process_explicit(self, event: CaptureEvent) -> CaptureOutcome:
        user_id = event.user_id
        attempts = max(1, self.config.capture.max_attempts)
        backoff_s = self.config.capture.base_backoff_ms / 1000.0
        for attempt in range(1, attempts + 1):
            try:
                outcome = self.pipeline.process(event)
                break
            except TransientStorageError as exc:
                if attempt >= attempts:
                    logger.error("memory explicit save failed user={} attempts={}: {}", user_id, attempt, exc)
                    raise CaptureFailedError(f"memory save failed after {attempt} attempts: {exc}", attempt) from exc
                logger.warning("memory explicit save retry user={} attempt={}: {}", user_id, attempt, exc)
                time.sleep(backoff_s * (2 ** (attempt - 1)))

        if outcome.state == CaptureState.REJECTED:
            raise MemoryValidationError(outcome.reason or "rejected", f"memory not saved: {outcome.reason}")
        return outcome

    def capture_turn(
        self,
        user_id: str,
        turn_text: str,
        *,
        conversation_context: str = "",
        thread_id: str | None = None,
        role: SpeakerRole = "user",
        thread_started_at: str | None = None,
    ) -> bool:
        """Queue a conversational turn for passive capture; never raises."""
        if not self.config.enabled or not self.config.capture.enabled:
            return False
        return self.workers.submit(
            CaptureEvent(
                user_id=user_id,
                content=turn_text,
                explicit=False,
                thread_id=thread_id,
                conversation_context=conversation_context,
                role=role,
                thread_started_at=thread_started_at,
            )
        )

    def capture(self, event: CaptureEvent) -> bool:
        """Route a capture event: explicit ones are stored now, passive ones queued.

        Explicit events raise like :meth:`remember`; passive events never raise.
        """
        if event.explicit:
            return self._process_explicit(event).stored
        if not self.config.enabled or not self.config.capture.enabled:
            return False
        return self.workers.submit(event)

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait for queued captures to finish."""
        return self.workers.flush(timeout)

    # ── recall ──────────────────────────────────────────────────────────

    def recall(
        self,
        user_id: str,
        query: str | None = None,
        thread_id: str | None = None,
        max_items: int | None = None,
        deadline_ms: float | None = None,
    ) -> RecallResult:
        if not self.config.enabled:
            return RecallResult()
        return self.recall_engine.recall(
            user_id,
            query=query,
            thread_id=thread_id,
            max_items=max_items,
            deadline_ms=deadline_ms,
        )

    async def arecall(
        self,
        user_id: str,
        query: str | None = None,
        thread_id: str | None = None,
        max_items: int | None = None,
        deadline_ms: float | None = None,
    ) -> RecallResult:
        if not self.config.enabled:
            return RecallResult()
        return await self.recall_engine.arecall(user_id, query, thread_id, max_items, deadline_ms)

    def build_context(
        self,
        user_id: str,
        query: str | None = None,
        *,
        max_items: int | None = None,
        deadline_ms: float | None = None,
    ) -> str:
        """Recall and render a ``[Retrieved Memory]`` block, or "" when empty."""
        result = self.recall(user_id, query=query, max_items=max_items, deadline_ms=deadline_ms)
        return render_recall(result.memories, max_chars=self.config.recall.max_prompt_chars)

    def search(self, user_id: str, query: str, limit: int = 8) -> list[tuple[MemoryRecord, float]]:
        return self.store.search(user_id, query, limit=limit)

    # ── record management ───────────────────────────────────────────────

    def _owned(self, user_id: str, record_id: str, *, include_deleted: bool = False) -> MemoryRecord:
        record = self.store.get(record_id, include_deleted=include_deleted)
        if record is None:
            raise MemoryNotFoundError(record_id)
        if record.user_id != user_id:
            raise MemoryOwnershipError(record_id, user_id)
        return record

    def _redacted(self, content: str) -> tuple[str, dict[str, str]]:
        redaction = self.redactor.redact(content.strip())
        text = redaction.text.strip()
        if not text:
            raise MemoryValidationError("empty_content", "memory content is empty")
        if is_fully_redacted(text):
            raise MemoryValidationError("all_redacted", "memory content is entirely sensitive data")
        return text, redaction.placeholders

    def _changed(self, record: MemoryRecord, action: str) -> None:
        self.profile_cache.invalidate(record.user_id)
        if record.tier in PROFILE_TIERS:
            self.events.emit(
                ProfileInvalidated(user_id=record.user_id, record_id=record.id, tier=record.tier, action=action)
            )

    def create(
        self,
        user_id: str,
        content: str,
        *,
        tier: MemoryTier | str = MemoryTier.TIER3,
        priority: float = 0.5,
        confidence: float = 1.0,
        thread_id: str | None = None,
    ) -> MemoryRecord:
        text, placeholders = self._redacted(content)
        try:
            tier_value = MemoryTier(tier)
        except ValueError as exc:
            raise MemoryValidationError("invalid_tier", f"unknown tier {tier!r}") from exc
        record = self.store.insert(
            MemoryRecord(
                id="",
                user_id=user_id,
                content=text,
                thread_id=thread_id,
                redaction_map=placeholders,
                tier=tier_value,
                priority=priority,
                confidence=confidence,
                topic=detect_topic(text),
                source="manual",
            )
        )
        self._changed(record, "inserted")
        return record

    def get(self, user_id: str, record_id: str) -> MemoryRecord:
        return self._owned(user_id, record_id)

    def list(
        self,
        user_id: str,
        *,
        tier: MemoryTier | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[MemoryRecord]:
        tier_value = None
        if tier is not None:
            try:
                tier_value = MemoryTier(tier)
            except ValueError as exc:
                raise MemoryValidationError("invalid_tier", f"unknown tier {tier!r}") from exc
        return self.store.list_for_user(user_id, tier=tier_value, limit=limit, offset=offset)

    def update(
        self,
        user_id: str,
        record_id: str,
        *,
        content: str | None = None,
        tier: MemoryTier | str | None = None,
        priority: float | None = None,
        confidence: float | None = None,
    ) -> MemoryRecord:
        """Edit a record in place; deleted records cannot be edited."""
        record = self._owned(user_id, record_id, include_deleted=True)
        if record.is_deleted:
            raise MemoryStateError(f"memory record {record_id} is deleted")

        if content is not None:
            record.content, record.redaction_map = self._redacted(content)
            record.topic = detect_topic(record.content)
        if tier is not None:
            try:
                record.tier = MemoryTier(tier)
            except ValueError as exc:
                raise MemoryValidationError("invalid_tier", f"unknown tier {tier!r}") from exc
        if priority is not None:
            record.priority = priority
        if confidence is not None:
            record.confidence = confidence
        record.updated_at = utc_now_iso()

        updated = self.store.update(record, action="update")
        self._changed(updated, "updated")
        return updated

    def delete(self, user_id: str, record_id: str) -> bool:
        record = self._owned(user_id, record_id)
        deleted = self.store.soft_delete(record.id, reason="user")
        if deleted:
            self.profile_cache.invalidate(user_id)
        return deleted

    def restore_content(self, user_id: str, record_id: str) -> str:
        """Original text of a record with placeholders filled back in (owner only)."""
        record = self._owned(user_id, record_id)
        return restore(record.content, record.redaction_map)

    def audits(self, user_id: str, record_id: str) -> list[MemoryAudit]:
        self._owned(user_id, record_id, include_deleted=True)
        return self.store.audits(record_id)

    # ── profile ─────────────────────────────────────────────────────────

    def subscribe(self, callback: ProfileListener):
        """Receive ProfileInvalidated events; returns an unsubscribe function."""
        return self.events.subscribe(callback)

    def get_profile(self, user_id: str) -> UserProfile:
        cached = self.profile_cache.get(user_id)
        if cached is not None:
            return cached
        records = self.store.list_for_user(user_id, tier=MemoryTier.TIER1, limit=100)
        records += self.store.list_for_user(user_id, tier=MemoryTier.TIER2, limit=100)
        profile = build_profile(user_id, records)
        self.profile_cache.put(profile)
        return profile

    # ── maintenance ─────────────────────────────────────────────────────

    def run_retention(self, now: datetime | None = None) -> RetentionReport:
        report = run_retention(self.store, self.retention_policy, now=now)
        if report.expired or report.promoted or report.demoted:
            self.profile_cache.clear()
        return report

    def reindex(self) -> None:
        """Rebuild the full-text index from live records."""
        self.store.reindex()
        logger.info("memory search index rebuilt db={}", self.db_path)

    def stats(self, user_id: str | None = None) -> dict[str, object]:
        stats = self.store.stats(user_id)
        stats.update(
            {
                "enabled": self.config.enabled,
                "capture_enabled": self.config.capture.enabled,
                "capture_pending": self.workers.pending(),
                "capture_dropped": self.workers.dropped,
                "tracker": self.tracker.stats(),
                "profile_cache_size": len(self.profile_cache),
            }
        )
        return stats

"""Capture pipeline: redact, dedup-check, score and store one event."""

from __future__ import annotations

import queue
import re
import threading
import time
import zlib
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from loguru import logger

from memkeep.memory.errors import MemoryValidationError, TransientStorageError
from memkeep.memory.models import (
    CaptureEvent,
    CaptureOutcome,
    CaptureState,
    MemoryRecord,
    MemoryTier,
    best_tier,
)
from memkeep.memory.profile import PROFILE_TIERS, ProfileInvalidated
from memkeep.memory.redaction import Redactor, is_fully_redacted, redact
from memkeep.memory.scoring import QualityScorer, ScoringContext, TierClassifier
from memkeep.memory.similarity import DedupEngine, detect_topic
from memkeep.memory.text import compact, normalize
from memkeep.utils.helpers import utc_now_iso

if TYPE_CHECKING:
    from memkeep.config.schema import MemoryScoringConfig
    from memkeep.memory.profile import ProfileCache, ProfileEvents
    from memkeep.memory.store import MemoryStore
    from memkeep.memory.tracker import CrossThreadTracker
    from memkeep.telemetry.base import TelemetryPort

_REMEMBER_PREFIX = re.compile(
    r"^\s*(?:please\s+)?remember(?:\s+that)?\s*[,:-]?\s+",
    re.IGNORECASE,
)


def strip_remember_prefix(text: str) -> str:
    """Drop a leading "remember (that)" from an explicit save."""
    return _REMEMBER_PREFIX.sub("", text, count=1).strip()


def preview(text: str, limit: int = 80) -> str:
    """Redacted, shortened content for log lines."""
    return compact(redact(text or "").text, limit)


@dataclass(slots=True)
class CaptureSettings:
    tier1_threshold: float = 0.62
    tier2_threshold: float = 0.70
    tier3_threshold: float = 0.70
    explicit_priority: float = 0.9
    explicit_confidence: float = 0.8
    passive_confidence: float = 0.8
    promotion_min_threads: int = 3

    @classmethod
    def from_config(cls, scoring: "MemoryScoringConfig", promotion_min_threads: int = 3) -> "CaptureSettings":
        return cls(
            tier1_threshold=scoring.tier1_threshold,
            tier2_threshold=scoring.tier2_threshold,
            tier3_threshold=scoring.tier3_threshold,
            explicit_priority=scoring.explicit_priority,
            explicit_confidence=scoring.explicit_confidence,
            passive_confidence=scoring.passive_confidence,
            promotion_min_threads=promotion_min_threads,
        )

    def threshold_for(self, tier: MemoryTier) -> float:
        return {
            MemoryTier.TIER1: self.tier1_threshold,
            MemoryTier.TIER2: self.tier2_threshold,
            MemoryTier.TIER3: self.tier3_threshold,
        }[tier]


class CapturePipeline:
    """Turns one capture event into zero or one stored/updated record.

    Dedup and write for a user happen under that user's lock, so each
    dedup decision sees every earlier write for the same user. Different
    users never share a lock.
    """

    def __init__(
        self,
        store: "MemoryStore",
        *,
        dedup: DedupEngine,
        tracker: "CrossThreadTracker",
        scorer: QualityScorer | None = None,
        classifier: TierClassifier | None = None,
        redactor: Redactor | None = None,
        settings: CaptureSettings | None = None,
        profile_cache: "ProfileCache | None" = None,
        events: "ProfileEvents | None" = None,
        telemetry: "TelemetryPort | None" = None,
    ) -> None:
        self.store = store
        self.dedup = dedup
        self.tracker = tracker
        self.scorer = scorer or QualityScorer()
        self.classifier = classifier or TierClassifier(tracker)
        self.redactor = redactor or Redactor()
        self.settings = settings or CaptureSettings()
        self.profile_cache = profile_cache
        self.events = events
        self.telemetry = telemetry

        self._locks_guard = threading.Lock()
        self._user_locks: dict[str, list] = {}

    @contextmanager
    def _user_lock(self, user_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._user_locks.get(user_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._user_locks[user_id] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._user_locks.pop(user_id, None)

    def _finish(self, outcome: CaptureOutcome, event: CaptureEvent) -> CaptureOutcome:
        outcome.history.append(outcome.state)
        if self.telemetry is not None:
            self.telemetry.incr("captures_total", labels=(("outcome", outcome.state.value),))
        logger.debug(
            "memory capture user={} explicit={} state={} reason={} content={!r}",
            event.user_id,
            event.explicit,
            outcome.state.value,
            outcome.reason,
            preview(event.content),
        )
        return outcome

    def process(self, event: CaptureEvent) -> CaptureOutcome:
        """Run one event through the state machine.

        Raises TransientStorageError when the store is temporarily
        unavailable; every other failure ends in a ``rejected`` outcome.
        """
        history = [CaptureState.RECEIVED]

        raw = event.content or ""
        if event.explicit:
            raw = strip_remember_prefix(raw)
        raw = raw.strip()
        if not raw:
            return self._finish(
                CaptureOutcome(CaptureState.REJECTED, reason="empty_content", history=history), event
            )

        redaction = self.redactor.redact(raw)
        text = self.store.truncate(redaction.text.strip())
        history.append(CaptureState.REDACTED)
        if not text or is_fully_redacted(text):
            return self._finish(
                CaptureOutcome(CaptureState.REJECTED, reason="all_redacted", history=history), event
            )

        topic = detect_topic(text)
        tracker_key = topic or normalize(text)

        with self._user_lock(event.user_id):
            # Every sighting counts toward cross-thread repeats, stored or not.
            seen = self.tracker.observe(event.user_id, tracker_key, event.thread_id)
            score: float | None = None
            if event.explicit:
                tier = MemoryTier.TIER1
                priority = self.settings.explicit_priority
                confidence = self.settings.explicit_confidence
            else:
                tier = self.classifier.classify(text, user_id=event.user_id, topic=tracker_key)
                score = self.scorer.score(
                    text,
                    ScoringContext(
                        role=event.role,
                        conversation_context=event.conversation_context,
                        thread_started_at=event.thread_started_at,
                    ),
                )
                if score < self.settings.threshold_for(tier):
                    return self._finish(
                        CaptureOutcome(
                            CaptureState.DROPPED,
                            reason="below_threshold",
                            score=score,
                            history=history,
                        ),
                        event,
                    )
                priority = score
                confidence = self.settings.passive_confidence

            match = self.dedup.find_match(event.user_id, text, topic=topic)
            history.append(CaptureState.DEDUP_CHECKED)

            try:
                if match is not None:
                    record = self._supersede(
                        match.record,
                        event,
                        text,
                        redaction.placeholders,
                        tier=tier,
                        priority=priority,
                        confidence=confidence,
                        topic=topic,
                        tracker_key=tracker_key,
                        detail={"similarity": round(match.similarity, 4), "by_topic": match.by_topic},
                    )
                    state = CaptureState.SUPERSEDED
                else:
                    thread_set = set(seen.thread_ids)
                    if event.thread_id:
                        thread_set.add(event.thread_id)
                    record = self.store.insert(
                        MemoryRecord(
                            id="",
                            user_id=event.user_id,
                            content=text,
                            thread_id=event.thread_id,
                            source_thread_id=event.thread_id,
                            redaction_map=dict(redaction.placeholders),
                            tier=tier,
                            priority=priority,
                            confidence=confidence,
                            repeats=max(1, len(thread_set)),
                            thread_set=thread_set,
                            topic=topic,
                            source="explicit" if event.explicit else "passive",
                        ),
                        detail={"score": score} if score is not None else None,
                    )
                    state = CaptureState.INSERTED
            except MemoryValidationError as exc:
                return self._finish(
                    CaptureOutcome(CaptureState.REJECTED, reason=exc.reason, score=score, history=history),
                    event,
                )

        self._after_write(record, state)
        return self._finish(CaptureOutcome(state, record=record, score=score, history=history), event)

    def _supersede(
        self,
        existing: MemoryRecord,
        event: CaptureEvent,
        text: str,
        placeholders: dict[str, str],
        tier: MemoryTier,
        priority: float,
        confidence: float,
        topic: str | None,
        tracker_key: str,
        detail: dict[str, object],
    ) -> MemoryRecord:
        thread_set = set(existing.thread_set)
        if event.thread_id:
            thread_set.add(event.thread_id)

        new_tier = best_tier(existing.tier, tier)
        if self.tracker.is_repeated(event.user_id, tracker_key) or (
            len(thread_set) >= self.settings.promotion_min_threads
        ):
            new_tier = MemoryTier.TIER1

        now = utc_now_iso()
        updated = MemoryRecord(
            id=existing.id,
            user_id=existing.user_id,
            content=text,
            thread_id=existing.thread_id,
            source_thread_id=existing.source_thread_id,
            redaction_map=dict(placeholders),
            tier=new_tier,
            priority=max(existing.priority, priority),
            confidence=max(existing.confidence, confidence),
            repeats=existing.repeats + 1,
            thread_set=thread_set,
            topic=topic or existing.topic,
            source=existing.source,
            created_at=existing.created_at,
            updated_at=now,
            last_seen_ts=now,
        )
        detail = {
            **detail,
            "thread_id": event.thread_id,
            "previous_tier": existing.tier.value,
            "tier": new_tier.value,
            "repeats": updated.repeats,
        }
        action = "promote" if new_tier.outranks(existing.tier) else "supersede"
        return self.store.update(updated, action=action, detail=detail)

    def _after_write(self, record: MemoryRecord, state: CaptureState) -> None:
        if self.profile_cache is not None:
            self.profile_cache.invalidate(record.user_id)
        if self.events is not None and record.tier in PROFILE_TIERS:
            self.events.emit(
                ProfileInvalidated(
                    user_id=record.user_id,
                    record_id=record.id,
                    tier=record.tier,
                    action=state.value,
                )
            )


@dataclass(slots=True)
class CaptureJob:
    """One queued capture with its retry bookkeeping."""

    event: CaptureEvent
    attempts: int = 0
    last_error: str | None = None
    enqueued_at: float = field(default_factory=time.monotonic)


class CaptureWorkerPool:
    """Background workers draining bounded, per-user-sharded capture queues.

    Jobs for one user always land on the same worker, so they are processed
    in submission order. Transient storage failures are retried with
    exponential backoff up to ``max_attempts``; after that the job is logged
    and dropped. Nothing here raises into the submitting thread.
    """

    def __init__(
        self,
        pipeline: CapturePipeline,
        *,
        workers: int = 2,
        queue_maxsize: int = 256,
        max_attempts: int = 3,
        base_backoff_ms: int = 100,
        telemetry: "TelemetryPort | None" = None,
        on_outcome: Callable[[CaptureJob, CaptureOutcome], None] | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.max_attempts = max(1, max_attempts)
        self.base_backoff_s = max(0, base_backoff_ms) / 1000.0
        self.telemetry = telemetry
        self.on_outcome = on_outcome
        self._queues: list[queue.Queue[CaptureJob]] = [
            queue.Queue(maxsize=max(1, queue_maxsize)) for _ in range(max(1, workers))
        ]
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self.dropped = 0

    def start(self) -> None:
        if self._threads:
            return
        for index, jobs in enumerate(self._queues):
            thread = threading.Thread(
                target=self._worker_loop,
                args=(jobs,),
                name=f"memory-capture-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def _shard(self, user_id: str) -> queue.Queue[CaptureJob]:
        return self._queues[zlib.crc32(user_id.encode("utf-8")) % len(self._queues)]

    def submit(self, event: CaptureEvent) -> bool:
        """Enqueue ``event``; returns False when it was dropped."""
        if self._stop.is_set():
            logger.warning("memory capture pool stopped; dropping event user={}", event.user_id)
            self._record_drop("stopped")
            return False
        try:
            self._shard(event.user_id).put_nowait(CaptureJob(event=event))
        except queue.Full:
            logger.warning("memory capture queue full; dropping event user={}", event.user_id)
            self._record_drop("queue_full")
            return False
        self._report_depth()
        return True

    def pending(self) -> int:
        return sum(jobs.unfinished_tasks for jobs in self._queues)

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued job has finished; False on timeout."""
        deadline = time.monotonic() + timeout
        while self.pending() > 0:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def close(self, timeout: float = 2.0) -> None:
        """Drain for up to ``timeout`` seconds, stop workers, drop what is left."""
        self.flush(timeout)
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads.clear()
        abandoned = 0
        for jobs in self._queues:
            while True:
                try:
                    jobs.get_nowait()
                except queue.Empty:
                    break
                jobs.task_done()
                abandoned += 1
                self._record_drop("stopped")
        if abandoned:
            logger.warning("memory capture pool closed with {} queued jobs dropped", abandoned)
        self._report_depth()

    def _worker_loop(self, jobs: queue.Queue[CaptureJob]) -> None:
        while not self._stop.is_set():
            try:
                job = jobs.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self._run(job)
            finally:
                jobs.task_done()
                self._report_depth()

    def _run(self, job: CaptureJob) -> None:
        while True:
            job.attempts += 1
            try:
                outcome = self.pipeline.process(job.event)
            except TransientStorageError as exc:
                job.last_error = str(exc)
                if job.attempts >= self.max_attempts:
                    logger.warning(
                        "memory capture dropped after {} attempts user={} content={!r} error={}",
                        job.attempts,
                        job.event.user_id,
                        preview(job.event.content),
                        job.last_error,
                    )
                    self._record_drop("retries_exhausted")
                    return
                delay = self.base_backoff_s * (2 ** (job.attempts - 1))
                logger.debug(
                    "memory capture retry user={} attempt={} in {:.3f}s: {}",
                    job.event.user_id,
                    job.attempts,
                    delay,
                    exc,
                )
                if self._stop.wait(delay):
                    self._record_drop("stopped")
                    return
                continue
            except Exception as exc:
                job.last_error = str(exc)
                logger.exception(
                    "memory capture failed user={} content={!r}: {}",
                    job.event.user_id,
                    preview(job.event.content),
                    exc,
                )
                self._record_drop("error")
                return

            if self.on_outcome is not None:
                try:
                    self.on_outcome(job, outcome)
                except Exception:
                    logger.exception("memory capture outcome callback failed user={}", job.event.user_id)
            return

    def _record_drop(self, reason: str) -> None:
        self.dropped += 1
        if self.telemetry is not None:
            self.telemetry.incr("capture_jobs_dropped_total", labels=(("reason", reason),))

    def _report_depth(self) -> None:
        if self.telemetry is not None:
            self.telemetry.gauge("capture_queue_size", float(sum(jobs.qsize() for jobs in self._queues)))

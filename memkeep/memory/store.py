"""SQLite record store for memkeep with FTS5 search and an audit trail."""

from __future__ import annotations

import json
import math
import re
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from loguru import logger

from memkeep.memory.errors import (
    MemoryNotFoundError,
    MemoryStateError,
    MemoryValidationError,
    TransientStorageError,
)
from memkeep.memory.models import MemoryAudit, MemoryRecord, MemoryTier
from memkeep.memory.redaction import PLACEHOLDER_RE
from memkeep.utils.helpers import ensure_dir, utc_now, utc_now_iso

DEFAULT_MAX_CONTENT_CHARS = 1024
TRUNCATION_MARKER = "..."

_TIER_RANK_SQL = "CASE tier WHEN 'TIER1' THEN 1 WHEN 'TIER2' THEN 2 WHEN 'TIER3' THEN 3 ELSE 4 END"


class MemoryStore:
    """Durable memory records over SQLite in WAL mode.

    All writes go through one connection guarded by a lock, so supersedence
    decisions are applied in order. Reads use one connection per thread and
    never wait on the writer.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        max_content_chars: int = DEFAULT_MAX_CONTENT_CHARS,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path.expanduser()
        ensure_dir(self.db_path.parent)
        self.max_content_chars = max_content_chars
        self._busy_timeout_s = busy_timeout_ms / 1000.0

        self._lock = threading.RLock()
        self._conn = self._connect()
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

        self._local = threading.local()
        self._readers: list[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()
        self._closed = False
        self._create_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            timeout=self._busy_timeout_s,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            with self._readers_lock:
                for reader in self._readers:
                    reader.close()
                self._readers.clear()
            self._conn.close()

    def _create_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS memories (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    thread_id TEXT,
                    source_thread_id TEXT,
                    content TEXT NOT NULL CHECK (length(content) > 0),
                    redaction_map TEXT NOT NULL DEFAULT '{}',
                    tier TEXT NOT NULL DEFAULT 'TIER3' CHECK (tier IN ('TIER1', 'TIER2', 'TIER3')),
                    priority REAL NOT NULL CHECK (priority >= 0 AND priority <= 1),
                    confidence REAL NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
                    repeats INTEGER NOT NULL DEFAULT 1 CHECK (repeats >= 1),
                    thread_set TEXT NOT NULL DEFAULT '[]',
                    topic TEXT,
                    source TEXT NOT NULL DEFAULT 'passive',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_seen_ts TEXT NOT NULL,
                    deleted_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_memories_user_thread
                ON memories (user_id, thread_id);

                CREATE INDEX IF NOT EXISTS idx_memories_user_tier_updated
                ON memories (user_id, tier, updated_at);

                CREATE INDEX IF NOT EXISTS idx_memories_priority
                ON memories (priority DESC);

                CREATE INDEX IF NOT EXISTS idx_memories_created
                ON memories (created_at);

                CREATE INDEX IF NOT EXISTS idx_memories_last_seen
                ON memories (last_seen_ts);

                CREATE INDEX IF NOT EXISTS idx_memories_user_updated
                ON memories (user_id, deleted_at, updated_at DESC);

                CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts
                USING fts5(record_id UNINDEXED, user_id UNINDEXED, content);

                CREATE TABLE IF NOT EXISTS memory_audits (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    detail_json TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_memory_audits_record
                ON memory_audits (record_id, created_at);

                CREATE TABLE IF NOT EXISTS memory_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    # ── connections ─────────────────────────────────────────────────────

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise MemoryValidationError("out_of_range", str(exc)) from exc
            except sqlite3.OperationalError as exc:
                self._conn.rollback()
                raise TransientStorageError(str(exc)) from exc
            except BaseException:
                self._conn.rollback()
                raise

    def _reader(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._reader()
        except sqlite3.OperationalError as exc:
            raise TransientStorageError(str(exc)) from exc

    # ── mapping & validation ────────────────────────────────────────────

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> MemoryRecord:
        return MemoryRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            thread_id=str(row["thread_id"]) if row["thread_id"] else None,
            source_thread_id=str(row["source_thread_id"]) if row["source_thread_id"] else None,
            content=str(row["content"]),
            redaction_map=json.loads(row["redaction_map"] or "{}"),
            tier=MemoryTier(str(row["tier"])),
            priority=float(row["priority"]),
            confidence=float(row["confidence"]),
            repeats=int(row["repeats"]),
            thread_set=set(json.loads(row["thread_set"] or "[]")),
            topic=str(row["topic"]) if row["topic"] else None,
            source=str(row["source"]),
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
            last_seen_ts=str(row["last_seen_ts"]),
            deleted_at=str(row["deleted_at"]) if row["deleted_at"] else None,
        )

    def truncate(self, content: str) -> str:
        """Cut content to the cap, ending with the truncation marker.

        A cut never splits a redaction placeholder; the whole placeholder
        is dropped instead.
        """
        if len(content) <= self.max_content_chars:
            return content
        cut = self.max_content_chars - len(TRUNCATION_MARKER)
        for match in PLACEHOLDER_RE.finditer(content):
            if match.start() < cut < match.end():
                cut = match.start()
                break
        return content[:cut] + TRUNCATION_MARKER

    def validate(self, record: MemoryRecord) -> MemoryRecord:
        """Return a write-ready copy of ``record`` or raise MemoryValidationError."""
        content = (record.content or "").strip()
        if not content:
            raise MemoryValidationError("empty_content", "memory content is empty")
        if not record.user_id:
            raise MemoryValidationError("empty_content", "memory user_id is empty")

        for name in ("priority", "confidence"):
            value = getattr(record, name)
            if not isinstance(value, (int, float)) or math.isnan(value) or not 0.0 <= value <= 1.0:
                raise MemoryValidationError("out_of_range", f"{name} must be within [0, 1], got {value!r}")
        if record.repeats < 1:
            raise MemoryValidationError("out_of_range", f"repeats must be >= 1, got {record.repeats}")

        try:
            tier = MemoryTier(record.tier)
        except ValueError as exc:
            raise MemoryValidationError("invalid_tier", f"unknown tier {record.tier!r}") from exc

        return replace(
            record,
            content=self.truncate(content),
            tier=tier,
            priority=float(record.priority),
            confidence=float(record.confidence),
        )

    @staticmethod
    def _audit(
        conn: sqlite3.Connection,
        record: MemoryRecord,
        action: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO memory_audits (record_id, user_id, action, detail_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (record.id, record.user_id, action, json.dumps(detail or {}, sort_keys=True), utc_now_iso()),
        )

    # ── writes ──────────────────────────────────────────────────────────

    def insert(self, record: MemoryRecord, detail: dict[str, Any] | None = None) -> MemoryRecord:
        candidate = self.validate(record)
        if not candidate.id:
            candidate.id = uuid.uuid4().hex
        if not candidate.thread_set and candidate.thread_id:
            candidate.thread_set = {candidate.thread_id}
        if candidate.source_thread_id is None:
            candidate.source_thread_id = candidate.thread_id

        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO memories (
                    id, user_id, thread_id, source_thread_id,
                    content, redaction_map, tier, priority, confidence,
                    repeats, thread_set, topic, source,
                    created_at, updated_at, last_seen_ts, deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    candidate.id,
                    candidate.user_id,
                    candidate.thread_id,
                    candidate.source_thread_id,
                    candidate.content,
                    json.dumps(candidate.redaction_map, sort_keys=True),
                    candidate.tier.value,
                    candidate.priority,
                    candidate.confidence,
                    candidate.repeats,
                    json.dumps(sorted(candidate.thread_set)),
                    candidate.topic,
                    candidate.source,
                    candidate.created_at,
                    candidate.updated_at,
                    candidate.last_seen_ts,
                    candidate.deleted_at,
                ),
            )
            conn.execute(
                "INSERT INTO memories_fts (record_id, user_id, content) VALUES (?, ?, ?)",
                (candidate.id, candidate.user_id, candidate.content),
            )
            self._audit(conn, candidate, "insert", detail)
        logger.debug("memory insert id={} user={} tier={}", candidate.id, candidate.user_id, candidate.tier.value)
        return candidate

    def update(
        self,
        record: MemoryRecord,
        *,
        action: str = "update",
        detail: dict[str, Any] | None = None,
    ) -> MemoryRecord:
        """Write every mutable field of ``record`` over its stored row.

        Deleted rows are immutable; updating one raises MemoryStateError.
        """
        candidate = self.validate(record)
        with self._write() as conn:
            row = conn.execute(
                "SELECT deleted_at, content FROM memories WHERE id = ? LIMIT 1",
                (candidate.id,),
            ).fetchone()
            if row is None:
                raise MemoryNotFoundError(candidate.id)
            if row["deleted_at"]:
                raise MemoryStateError(f"memory record {candidate.id} is deleted")

            conn.execute(
                """
                UPDATE memories
                SET content = ?,
                    redaction_map = ?,
                    tier = ?,
                    priority = ?,
                    confidence = ?,
                    repeats = ?,
                    thread_set = ?,
                    topic = ?,
                    updated_at = ?,
                    last_seen_ts = ?
                WHERE id = ? AND deleted_at IS NULL
                """,
                (
                    candidate.content,
                    json.dumps(candidate.redaction_map, sort_keys=True),
                    candidate.tier.value,
                    candidate.priority,
                    candidate.confidence,
                    candidate.repeats,
                    json.dumps(sorted(candidate.thread_set)),
                    candidate.topic,
                    candidate.updated_at,
                    candidate.last_seen_ts,
                    candidate.id,
                ),
            )
            if str(row["content"]) != candidate.content:
                conn.execute("DELETE FROM memories_fts WHERE record_id = ?", (candidate.id,))
                conn.execute(
                    "INSERT INTO memories_fts (record_id, user_id, content) VALUES (?, ?, ?)",
                    (candidate.id, candidate.user_id, candidate.content),
                )
            self._audit(conn, candidate, action, detail)
        return candidate

    def soft_delete(self, record_id: str, *, reason: str = "user") -> bool:
        now_iso = utc_now_iso()
        with self._write() as conn:
            row = conn.execute(
                "SELECT * FROM memories WHERE id = ? AND deleted_at IS NULL LIMIT 1",
                (record_id,),
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                "UPDATE memories SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (now_iso, record_id),
            )
            conn.execute("DELETE FROM memories_fts WHERE record_id = ?", (record_id,))
            self._audit(conn, self._row_to_record(row), "delete", {"reason": reason})
        return True

    def set_priority(self, record_id: str, priority: float, *, action: str = "decay") -> None:
        """Change priority only; ``updated_at`` is left alone."""
        if math.isnan(priority) or not 0.0 <= priority <= 1.0:
            raise MemoryValidationError("out_of_range", f"priority must be within [0, 1], got {priority!r}")
        with self._write() as conn:
            row = conn.execute(
                "SELECT * FROM memories WHERE id = ? AND deleted_at IS NULL LIMIT 1",
                (record_id,),
            ).fetchone()
            if row is None:
                return
            conn.execute("UPDATE memories SET priority = ? WHERE id = ?", (priority, record_id))
            self._audit(
                conn,
                self._row_to_record(row),
                action,
                {"from": float(row["priority"]), "to": priority},
            )

    def set_tier(self, record_id: str, tier: MemoryTier, *, action: str) -> None:
        with self._write() as conn:
            row = conn.execute(
                "SELECT * FROM memories WHERE id = ? AND deleted_at IS NULL LIMIT 1",
                (record_id,),
            ).fetchone()
            if row is None:
                return
            conn.execute("UPDATE memories SET tier = ? WHERE id = ?", (tier.value, record_id))
            self._audit(conn, self._row_to_record(row), action, {"from": str(row["tier"]), "to": tier.value})

    def touch_last_seen(self, record_ids: list[str], ts: str | None = None) -> int:
        if not record_ids:
            return 0
        placeholders = ",".join(["?"] * len(record_ids))
        with self._write() as conn:
            cur = conn.execute(
                f"UPDATE memories SET last_seen_ts = ? WHERE deleted_at IS NULL AND id IN ({placeholders})",
                (ts or utc_now_iso(), *record_ids),
            )
            return int(cur.rowcount or 0)

    def purge_deleted(self, older_than_days: float, *, now: datetime | None = None) -> int:
        """Physically remove rows soft-deleted more than ``older_than_days`` ago."""
        cutoff = ((now or utc_now()) - timedelta(days=older_than_days)).isoformat(timespec="microseconds")
        with self._write() as conn:
            cur = conn.execute(
                "DELETE FROM memories WHERE deleted_at IS NOT NULL AND deleted_at < ?",
                (cutoff,),
            )
            return int(cur.rowcount or 0)

    def reindex(self) -> None:
        with self._write() as conn:
            conn.execute("DELETE FROM memories_fts")
            conn.execute(
                """
                INSERT INTO memories_fts (record_id, user_id, content)
                SELECT id, user_id, content FROM memories WHERE deleted_at IS NULL
                """
            )

    # ── reads ───────────────────────────────────────────────────────────

    def get(self, record_id: str, *, include_deleted: bool = False) -> MemoryRecord | None:
        sql = "SELECT * FROM memories WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        with self._read() as conn:
            row = conn.execute(sql + " LIMIT 1", (record_id,)).fetchone()
        return self._row_to_record(row) if row is not None else None

    def list_for_user(
        self,
        user_id: str,
        *,
        tier: MemoryTier | None = None,
        limit: int = 50,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> list[MemoryRecord]:
        where = ["user_id = ?"]
        params: list[object] = [user_id]
        if not include_deleted:
            where.append("deleted_at IS NULL")
        if tier is not None:
            where.append("tier = ?")
            params.append(MemoryTier(tier).value)
        sql = (
            "SELECT * FROM memories "
            f"WHERE {' AND '.join(where)} "
            "ORDER BY updated_at DESC, id "
            "LIMIT ? OFFSET ?"
        )
        with self._read() as conn:
            rows = conn.execute(sql, (*params, int(limit), int(offset))).fetchall()
        return [self._row_to_record(row) for row in rows]

    def recent_for_user(self, user_id: str, limit: int = 50) -> list[MemoryRecord]:
        """Most recently updated live records; the dedup candidate window."""
        return self.list_for_user(user_id, limit=limit)

    def iter_recall_candidates(
        self,
        user_id: str,
        keywords: list[str],
        *,
        limit: int,
        recency_window_hours: float = 24,
    ) -> Iterator[MemoryRecord]:
        """Yield live records in recall order.

        Order: updated inside the recency window first, then newest update,
        then number of query keywords found in the content, then tier, then
        priority.
        """
        recent_cutoff = (utc_now() - timedelta(hours=recency_window_hours)).isoformat(timespec="microseconds")
        if keywords:
            relevance = " + ".join(["(CASE WHEN instr(lower(content), ?) > 0 THEN 1 ELSE 0 END)"] * len(keywords))
        else:
            relevance = "0"
        sql = (
            f"SELECT *, ({relevance}) AS relevance_score, "
            "(CASE WHEN updated_at >= ? THEN 0 ELSE 1 END) AS recency_bucket "
            "FROM memories "
            "WHERE user_id = ? AND deleted_at IS NULL "
            "ORDER BY recency_bucket ASC, updated_at DESC, relevance_score DESC, "
            f"{_TIER_RANK_SQL} ASC, priority DESC "
            "LIMIT ?"
        )
        params = (*[k.lower() for k in keywords], recent_cutoff, user_id, int(limit))
        with self._read() as conn:
            cursor = conn.execute(sql, params)
            for row in cursor:
                yield self._row_to_record(row)

    def recall_candidates(
        self,
        user_id: str,
        keywords: list[str],
        *,
        limit: int,
        recency_window_hours: float = 24,
    ) -> list[MemoryRecord]:
        return list(
            self.iter_recall_candidates(
                user_id,
                keywords,
                limit=limit,
                recency_window_hours=recency_window_hours,
            )
        )

    def iter_live(self, user_id: str | None = None) -> Iterator[MemoryRecord]:
        sql = "SELECT * FROM memories WHERE deleted_at IS NULL"
        params: tuple[object, ...] = ()
        if user_id is not None:
            sql += " AND user_id = ?"
            params = (user_id,)
        with self._read() as conn:
            rows = conn.execute(sql + " ORDER BY created_at", params).fetchall()
        for row in rows:
            yield self._row_to_record(row)

    @staticmethod
    def _normalize_query(query: str) -> str:
        tokens = re.findall(r"[a-zA-Z0-9_]{2,}", query.lower())
        deduped: list[str] = []
        seen: set[str] = set()
        for token in tokens:
            if token in seen:
                continue
            seen.add(token)
            deduped.append(f'"{token}"')
            if len(deduped) >= 16:
                break
        return " OR ".join(deduped)

    def search(self, user_id: str, query: str, limit: int = 8) -> list[tuple[MemoryRecord, float]]:
        """Full-text search over live records; lower bm25 means a better match."""
        fts_query = self._normalize_query(query)
        if not fts_query:
            return []
        sql = (
            "SELECT m.*, bm25(memories_fts) AS fts_score "
            "FROM memories_fts "
            "JOIN memories m ON m.id = memories_fts.record_id "
            "WHERE memories_fts.user_id = ? AND m.deleted_at IS NULL "
            "AND memories_fts MATCH ? "
            "ORDER BY fts_score ASC, m.updated_at DESC "
            "LIMIT ?"
        )
        with self._read() as conn:
            rows = conn.execute(sql, (user_id, fts_query, int(limit))).fetchall()
        return [(self._row_to_record(row), float(row["fts_score"] or 0.0)) for row in rows]

    def audits(self, record_id: str) -> list[MemoryAudit]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM memory_audits WHERE record_id = ? ORDER BY id",
                (record_id,),
            ).fetchall()
        return [
            MemoryAudit(
                record_id=str(row["record_id"]),
                action=str(row["action"]),
                detail=json.loads(row["detail_json"] or "{}"),
                created_at=str(row["created_at"]),
            )
            for row in rows
        ]

    def stats(self, user_id: str | None = None) -> dict[str, object]:
        where = ""
        params: tuple[object, ...] = ()
        if user_id is not None:
            where = "AND user_id = ?"
            params = (user_id,)
        with self._read() as conn:
            total_active = int(
                conn.execute(
                    f"SELECT COUNT(*) AS c FROM memories WHERE deleted_at IS NULL {where}",
                    params,
                ).fetchone()["c"]
            )
            total_deleted = int(
                conn.execute(
                    f"SELECT COUNT(*) AS c FROM memories WHERE deleted_at IS NOT NULL {where}",
                    params,
                ).fetchone()["c"]
            )
            by_tier_rows = conn.execute(
                f"""
                SELECT tier, COUNT(*) AS c
                FROM memories
                WHERE deleted_at IS NULL {where}
                GROUP BY tier
                ORDER BY tier
                """,
                params,
            ).fetchall()
            journal_mode = str(conn.execute("PRAGMA journal_mode").fetchone()[0])

        return {
            "db_path": str(self.db_path),
            "wal_enabled": journal_mode.lower() == "wal",
            "total_active": total_active,
            "total_deleted": total_deleted,
            "by_tier": {str(row["tier"]): int(row["c"]) for row in by_tier_rows},
        }

    def get_meta(self, key: str) -> str | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT value FROM memory_meta WHERE key = ? LIMIT 1",
                (key,),
            ).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def set_meta(self, key: str, value: str) -> None:
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO memory_meta (key, value)
                VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )

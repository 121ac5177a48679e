"""
SQLite database layer for ScreenRecap.
Thread-safe via check_same_thread=False + explicit locking: every statement
goes through one re-entrant lock, so there is a single writer at a time.
"""

import json
import sqlite3
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from recap.core.constants import (
    DB_PATH, ChunkStatus, BatchStatus, ESTIMATED_CHUNK_SEC,
    MAX_ERROR_MESSAGE_LEN, MAX_AUDIT_BODY_LEN,
)
from recap.core.models_sqlite import (
    Chunk, AnalysisBatch, Observation, TimelineCard, LLMCall,
)
from recap.core.timeparse import day_bounds, logical_day

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    start_ts INTEGER NOT NULL,
    end_ts INTEGER NOT NULL,
    file_path TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'recording'
);

CREATE INDEX IF NOT EXISTS idx_chunks_status ON chunks(status);
CREATE INDEX IF NOT EXISTS idx_chunks_start_ts ON chunks(start_ts);
CREATE INDEX IF NOT EXISTS idx_chunks_file_path ON chunks(file_path);

CREATE TABLE IF NOT EXISTS analysis_batches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    start_ts INTEGER NOT NULL,
    end_ts INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    reason TEXT,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_analysis_batches_status ON analysis_batches(status);
CREATE INDEX IF NOT EXISTS idx_analysis_batches_start_ts ON analysis_batches(start_ts);

CREATE TABLE IF NOT EXISTS batch_chunks (
    batch_id INTEGER NOT NULL REFERENCES analysis_batches(id) ON DELETE CASCADE,
    chunk_id INTEGER NOT NULL REFERENCES chunks(id) ON DELETE RESTRICT,
    PRIMARY KEY (batch_id, chunk_id)
);

CREATE INDEX IF NOT EXISTS idx_batch_chunks_chunk ON batch_chunks(chunk_id);

CREATE TABLE IF NOT EXISTS observations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_id INTEGER NOT NULL REFERENCES analysis_batches(id) ON DELETE CASCADE,
    start_ts INTEGER NOT NULL,
    end_ts INTEGER NOT NULL,
    observation TEXT NOT NULL,
    metadata TEXT,
    llm_model TEXT,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_observations_batch_id ON observations(batch_id);
CREATE INDEX IF NOT EXISTS idx_observations_time_range ON observations(start_ts, end_ts);

CREATE TABLE IF NOT EXISTS timeline_cards (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_id INTEGER REFERENCES analysis_batches(id) ON DELETE CASCADE,
    start_ts INTEGER NOT NULL,
    end_ts INTEGER NOT NULL,
    day TEXT NOT NULL,
    title TEXT NOT NULL,
    summary TEXT,
    detailed_summary TEXT,
    category TEXT NOT NULL,
    subcategory TEXT,
    metadata TEXT,
    video_summary_path TEXT,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_timeline_cards_day ON timeline_cards(day);
CREATE INDEX IF NOT EXISTS idx_timeline_cards_time_range ON timeline_cards(start_ts, end_ts);

CREATE TABLE IF NOT EXISTS llm_calls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_id INTEGER,
    call_group_id TEXT,
    attempt INTEGER NOT NULL DEFAULT 1,
    provider TEXT NOT NULL,
    model TEXT,
    operation TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('success', 'failure')),
    latency_ms INTEGER,
    http_status INTEGER,
    request_method TEXT,
    request_url TEXT,
    request_body TEXT,
    response_body TEXT,
    error_code TEXT,
    error_message TEXT,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_llm_calls_batch ON llm_calls(batch_id);
CREATE INDEX IF NOT EXISTS idx_llm_calls_created ON llm_calls(created_at DESC);
"""

_CARD_OVERLAP = "(start_ts < ? AND end_ts > ?) OR (start_ts >= ? AND start_ts < ?)"


class Database:
    """SQLite database wrapper for ScreenRecap."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            # Set schema version
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()

    def close(self):
        if self.conn:
            with self._lock:
                self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> Chunk:
        return Chunk(**dict(row))

    @staticmethod
    def _row_to_batch(row: sqlite3.Row) -> AnalysisBatch:
        return AnalysisBatch(**dict(row))

    @staticmethod
    def _row_to_observation(row: sqlite3.Row) -> Observation:
        return Observation(**dict(row))

    @staticmethod
    def _row_to_card(row: sqlite3.Row) -> TimelineCard:
        data = dict(row)
        try:
            data['metadata'] = json.loads(data['metadata']) if data['metadata'] else {}
        except (TypeError, ValueError):
            logger.warning("Unreadable metadata on timeline card %s", data.get('id'))
            data['metadata'] = {}
        data['summary'] = data['summary'] or ""
        data['detailed_summary'] = data['detailed_summary'] or ""
        data['subcategory'] = data['subcategory'] or ""
        return TimelineCard(**data)

    @staticmethod
    def _row_to_call(row: sqlite3.Row) -> LLMCall:
        return LLMCall(**dict(row))

    @staticmethod
    def _placeholders(values) -> str:
        return ','.join('?' for _ in values)

    def _fetchall(self, sql: str, params=()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params=()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    # ── Chunk CRUD ────────────────────────────────────────────────────

    def insert_chunk(self, file_path: str, start_ts: int,
                     end_ts: int | None = None) -> Chunk:
        if end_ts is None:
            end_ts = start_ts + ESTIMATED_CHUNK_SEC
        with self._lock:
            cur = self.conn.execute(
                """INSERT INTO chunks (start_ts, end_ts, file_path, status)
                   VALUES (?, ?, ?, ?)""",
                (start_ts, end_ts, file_path, ChunkStatus.RECORDING),
            )
            self.conn.commit()
        return Chunk(id=cur.lastrowid, start_ts=start_ts, end_ts=end_ts,
                     file_path=file_path, status=ChunkStatus.RECORDING)

    def complete_chunk(self, file_path: str, end_ts: int) -> bool:
        with self._lock:
            cur = self.conn.execute(
                "UPDATE chunks SET end_ts = MAX(start_ts, ?), status = ? WHERE file_path = ?",
                (end_ts, ChunkStatus.COMPLETED, file_path),
            )
            self.conn.commit()
        return cur.rowcount > 0

    def delete_chunk_by_path(self, file_path: str) -> int:
        with self._lock:
            cur = self.conn.execute(
                """DELETE FROM chunks WHERE file_path = ?
                   AND id NOT IN (SELECT chunk_id FROM batch_chunks)""",
                (file_path,),
            )
            self.conn.commit()
        return cur.rowcount

    def get_chunk(self, chunk_id: int) -> Chunk | None:
        row = self._fetchone("SELECT * FROM chunks WHERE id = ?", (chunk_id,))
        return self._row_to_chunk(row) if row else None

    def get_chunk_by_path(self, file_path: str) -> Chunk | None:
        row = self._fetchone("SELECT * FROM chunks WHERE file_path = ?", (file_path,))
        return self._row_to_chunk(row) if row else None

    def fetch_unprocessed_chunks(self, oldest_allowed: int) -> list[Chunk]:
        rows = self._fetchall(
            """SELECT * FROM chunks
               WHERE start_ts >= ?
                 AND status = ?
                 AND id NOT IN (SELECT chunk_id FROM batch_chunks)
               ORDER BY start_ts ASC""",
            (oldest_allowed, ChunkStatus.COMPLETED),
        )
        return [self._row_to_chunk(r) for r in rows]

    def fetch_chunks_in_time_range(self, start_ts: int, end_ts: int) -> list[Chunk]:
        """Completed chunks overlapping [start_ts, end_ts]."""
        rows = self._fetchall(
            """SELECT * FROM chunks
               WHERE status = ? AND start_ts <= ? AND end_ts >= ?
               ORDER BY start_ts ASC""",
            (ChunkStatus.COMPLETED, end_ts, start_ts),
        )
        return [self._row_to_chunk(r) for r in rows]

    def claim_evictable_chunks(self, limit: int,
                               protect_from_ts: int | None = None) -> list[Chunk]:
        """
        Select and delete the oldest chunks that no batch references, in one
        transaction under the writer lock. Returns the deleted rows so the
        caller can remove their files after commit.

        Recording chunks starting at or after protect_from_ts are still being
        written by capture and are never claimed.
        """
        recording_clause = "status = ?"
        params = [ChunkStatus.COMPLETED, ChunkStatus.RECORDING]
        if protect_from_ts is not None:
            recording_clause = "status = ? AND start_ts < ?"
            params.append(protect_from_ts)
        params.append(limit)
        with self._lock:
            try:
                rows = self.conn.execute(
                    f"""SELECT * FROM chunks
                        WHERE (status = ? OR ({recording_clause}))
                          AND NOT EXISTS (
                              SELECT 1 FROM batch_chunks bc WHERE bc.chunk_id = chunks.id
                          )
                        ORDER BY start_ts ASC
                        LIMIT ?""",
                    params,
                ).fetchall()
                chunks = [self._row_to_chunk(r) for r in rows]
                if chunks:
                    ids = [c.id for c in chunks]
                    self.conn.execute(
                        f"DELETE FROM chunks WHERE id IN ({self._placeholders(ids)})",
                        ids,
                    )
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
        return chunks

    # ── Batch CRUD ────────────────────────────────────────────────────

    def save_batch(self, start_ts: int, end_ts: int, chunk_ids: list[int]) -> int | None:
        if not chunk_ids:
            return None
        with self._lock:
            try:
                cur = self.conn.execute(
                    """INSERT INTO analysis_batches (start_ts, end_ts, status, created_at)
                       VALUES (?, ?, ?, ?)""",
                    (start_ts, end_ts, BatchStatus.PENDING, self._now()),
                )
                batch_id = cur.lastrowid
                self.conn.executemany(
                    "INSERT INTO batch_chunks (batch_id, chunk_id) VALUES (?, ?)",
                    [(batch_id, cid) for cid in chunk_ids],
                )
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                logger.error("Failed to save batch [%d, %d]: %s", start_ts, end_ts, e)
                return None
        return batch_id

    def get_batch(self, batch_id: int) -> AnalysisBatch | None:
        row = self._fetchone("SELECT * FROM analysis_batches WHERE id = ?", (batch_id,))
        return self._row_to_batch(row) if row else None

    def all_batches(self) -> list[AnalysisBatch]:
        rows = self._fetchall("SELECT * FROM analysis_batches ORDER BY start_ts ASC")
        return [self._row_to_batch(r) for r in rows]

    def update_batch_status(self, batch_id: int, status: str, reason: str | None = None):
        with self._lock:
            self.conn.execute(
                "UPDATE analysis_batches SET status = ?, reason = ? WHERE id = ?",
                (status, reason, batch_id),
            )
            self.conn.commit()

    def mark_batch_failed(self, batch_id: int, reason: str):
        """The reason is stored verbatim; only audit rows are truncated."""
        self.update_batch_status(batch_id, BatchStatus.FAILED, reason=reason)

    def chunks_for_batch(self, batch_id: int) -> list[Chunk]:
        rows = self._fetchall(
            """SELECT c.* FROM batch_chunks bc
               JOIN chunks c ON c.id = bc.chunk_id
               WHERE bc.batch_id = ?
               ORDER BY c.start_ts ASC""",
            (batch_id,),
        )
        return [self._row_to_chunk(r) for r in rows]

    def fetch_batches_for_day(self, day: str) -> list[AnalysisBatch]:
        start_ts, end_ts = day_bounds(day)
        rows = self._fetchall(
            """SELECT * FROM analysis_batches
               WHERE start_ts >= ? AND start_ts < ?
               ORDER BY start_ts ASC""",
            (start_ts, end_ts),
        )
        return [self._row_to_batch(r) for r in rows]

    def reset_batch_statuses(self, batch_ids: list[int]) -> int:
        if not batch_ids:
            return 0
        with self._lock:
            cur = self.conn.execute(
                f"""UPDATE analysis_batches SET status = ?, reason = NULL
                    WHERE id IN ({self._placeholders(batch_ids)})""",
                [BatchStatus.PENDING, *batch_ids],
            )
            self.conn.commit()
        return cur.rowcount

    def batch_status_counts(self) -> dict[str, int]:
        rows = self._fetchall(
            "SELECT status, COUNT(*) AS n FROM analysis_batches GROUP BY status"
        )
        return {r['status']: r['n'] for r in rows}

    # ── Observations ──────────────────────────────────────────────────

    def save_observations(self, batch_id: int, observations: list[Observation]):
        if not observations:
            return
        now = self._now()
        with self._lock:
            self.conn.executemany(
                """INSERT INTO observations
                   (batch_id, start_ts, end_ts, observation, metadata, llm_model, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                [(batch_id, o.start_ts, o.end_ts, o.observation, o.metadata,
                  o.llm_model, now) for o in observations],
            )
            self.conn.commit()

    def fetch_observations(self, batch_id: int) -> list[Observation]:
        rows = self._fetchall(
            "SELECT * FROM observations WHERE batch_id = ? ORDER BY start_ts ASC",
            (batch_id,),
        )
        return [self._row_to_observation(r) for r in rows]

    def fetch_observations_in_range(self, start_ts: int, end_ts: int) -> list[Observation]:
        rows = self._fetchall(
            """SELECT * FROM observations
               WHERE start_ts < ? AND end_ts > ?
               ORDER BY start_ts ASC""",
            (end_ts, start_ts),
        )
        return [self._row_to_observation(r) for r in rows]

    def delete_observations(self, batch_ids: list[int]) -> int:
        if not batch_ids:
            return 0
        with self._lock:
            cur = self.conn.execute(
                f"DELETE FROM observations WHERE batch_id IN ({self._placeholders(batch_ids)})",
                batch_ids,
            )
            self.conn.commit()
        return cur.rowcount

    # ── Timeline cards ────────────────────────────────────────────────

    def _insert_card(self, card: TimelineCard, batch_id: int | None, now: str) -> int:
        day = card.day or logical_day(card.start_ts)[0]
        cur = self.conn.execute(
            """INSERT INTO timeline_cards
               (batch_id, start_ts, end_ts, day, title, summary, detailed_summary,
                category, subcategory, metadata, video_summary_path, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (batch_id, card.start_ts, card.end_ts, day, card.title, card.summary,
             card.detailed_summary, card.category, card.subcategory,
             json.dumps(card.metadata) if card.metadata else None,
             card.video_summary_path, now),
        )
        return cur.lastrowid

    def save_timeline_card(self, batch_id: int | None, card: TimelineCard) -> int:
        with self._lock:
            card_id = self._insert_card(card, batch_id, self._now())
            self.conn.commit()
        return card_id

    def replace_timeline_cards_in_range(self, start_ts: int, end_ts: int,
                                        cards: list[TimelineCard],
                                        batch_id: int) -> tuple[list[int], list[str]]:
        """
        Delete cards overlapping [start_ts, end_ts) and insert the new set in
        one transaction. Returns (inserted_ids, video paths of deleted cards).
        """
        params = (end_ts, start_ts, start_ts, end_ts)
        now = self._now()
        with self._lock:
            try:
                rows = self.conn.execute(
                    f"""SELECT video_summary_path FROM timeline_cards
                        WHERE ({_CARD_OVERLAP}) AND video_summary_path IS NOT NULL""",
                    params,
                ).fetchall()
                video_paths = [r['video_summary_path'] for r in rows]
                self.conn.execute(f"DELETE FROM timeline_cards WHERE {_CARD_OVERLAP}", params)
                inserted = [self._insert_card(c, batch_id, now) for c in cards]
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
        return inserted, video_paths

    def get_timeline_card(self, card_id: int) -> TimelineCard | None:
        row = self._fetchone("SELECT * FROM timeline_cards WHERE id = ?", (card_id,))
        return self._row_to_card(row) if row else None

    def fetch_timeline_cards_in_range(self, start_ts: int, end_ts: int) -> list[TimelineCard]:
        rows = self._fetchall(
            f"SELECT * FROM timeline_cards WHERE {_CARD_OVERLAP} ORDER BY start_ts ASC",
            (end_ts, start_ts, start_ts, end_ts),
        )
        return [self._row_to_card(r) for r in rows]

    def fetch_timeline_cards_for_day(self, day: str) -> list[TimelineCard]:
        rows = self._fetchall(
            "SELECT * FROM timeline_cards WHERE day = ? ORDER BY start_ts ASC",
            (day,),
        )
        return [self._row_to_card(r) for r in rows]

    def update_timeline_card_video(self, card_id: int, video_path: str):
        with self._lock:
            self.conn.execute(
                "UPDATE timeline_cards SET video_summary_path = ? WHERE id = ?",
                (video_path, card_id),
            )
            self.conn.commit()

    def delete_timeline_cards_for_day(self, day: str) -> list[str]:
        """Delete every card whose start falls in the logical day. Returns timelapse paths."""
        start_ts, end_ts = day_bounds(day)
        with self._lock:
            rows = self.conn.execute(
                """SELECT video_summary_path FROM timeline_cards
                   WHERE start_ts >= ? AND start_ts < ? AND video_summary_path IS NOT NULL""",
                (start_ts, end_ts),
            ).fetchall()
            self.conn.execute(
                "DELETE FROM timeline_cards WHERE start_ts >= ? AND start_ts < ?",
                (start_ts, end_ts),
            )
            self.conn.commit()
        return [r['video_summary_path'] for r in rows]

    def delete_timeline_cards_for_batches(self, batch_ids: list[int]) -> list[str]:
        """Delete cards written by these batches, whatever day they fall on."""
        if not batch_ids:
            return []
        marks = self._placeholders(batch_ids)
        with self._lock:
            rows = self.conn.execute(
                f"""SELECT video_summary_path FROM timeline_cards
                    WHERE batch_id IN ({marks}) AND video_summary_path IS NOT NULL""",
                list(batch_ids),
            ).fetchall()
            self.conn.execute(
                f"DELETE FROM timeline_cards WHERE batch_id IN ({marks})",
                list(batch_ids),
            )
            self.conn.commit()
        return [r['video_summary_path'] for r in rows]

    def count_timeline_cards(self, batch_ids: list[int] | None = None) -> int:
        if batch_ids is None:
            row = self._fetchone("SELECT COUNT(*) AS n FROM timeline_cards")
        else:
            row = self._fetchone(
                f"SELECT COUNT(*) AS n FROM timeline_cards WHERE batch_id IN ({self._placeholders(batch_ids)})",
                batch_ids,
            )
        return row['n'] if row else 0

    # ── LLM call audit ────────────────────────────────────────────────

    def insert_llm_calls(self, calls: list[LLMCall]):
        if not calls:
            return
        now = self._now()
        with self._lock:
            self.conn.executemany(
                """INSERT INTO llm_calls
                   (batch_id, call_group_id, attempt, provider, model, operation, status,
                    latency_ms, http_status, request_method, request_url, request_body,
                    response_body, error_code, error_message, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [(c.batch_id, c.call_group_id, c.attempt, c.provider, c.model,
                  c.operation, c.status, c.latency_ms, c.http_status,
                  c.request_method, c.request_url,
                  (c.request_body or '')[:MAX_AUDIT_BODY_LEN] or None,
                  (c.response_body or '')[:MAX_AUDIT_BODY_LEN] or None,
                  c.error_code,
                  (c.error_message or '')[:MAX_ERROR_MESSAGE_LEN] or None,
                  c.created_at or now)
                 for c in calls],
            )
            self.conn.commit()

    def fetch_llm_calls(self, batch_id: int) -> list[LLMCall]:
        rows = self._fetchall(
            "SELECT * FROM llm_calls WHERE batch_id = ? ORDER BY id ASC",
            (batch_id,),
        )
        return [self._row_to_call(r) for r in rows]

    def fetch_recent_llm_calls(self, limit: int = 50) -> list[LLMCall]:
        rows = self._fetchall(
            "SELECT * FROM llm_calls ORDER BY id DESC LIMIT ?", (limit,)
        )
        return [self._row_to_call(r) for r in rows]

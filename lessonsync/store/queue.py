from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ._store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

OUTCOME_SYNCED = "synced"
OUTCOME_QUEUED = "queued"
OUTCOME_DROPPED = "dropped"
OUTCOME_REJECTED = "rejected"
OUTCOME_AUTH = "auth"
OUTCOME_STALE = "stale"


@dataclass(frozen=True)
class QueueEntry:
    session_id: str
    last_error: str | None
    attempts: int
    enqueued_at: str
    updated_at: str


def _now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


def _entry_from_row(row: sqlite3.Row) -> QueueEntry:
    return QueueEntry(
        session_id=str(row["session_id"]),
        last_error=row["last_error"],
        attempts=int(row["attempts"] or 0),
        enqueued_at=str(row["enqueued_at"]),
        updated_at=str(row["updated_at"]),
    )


def load_entry(conn: sqlite3.Connection, session_id: str) -> QueueEntry | None:
    row = conn.execute(
        """
        SELECT session_id, last_error, attempts, enqueued_at, updated_at
        FROM sync_queue
        WHERE session_id = ?
        """,
        (session_id,),
    ).fetchone()
    return _entry_from_row(row) if row else None


def upsert_entry(
    conn: sqlite3.Connection, session_id: str, *, last_error: str | None, attempts: int
) -> None:
    now = _now_iso()
    conn.execute(
        """
        INSERT INTO sync_queue(session_id, last_error, attempts, enqueued_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(session_id) DO UPDATE SET
            last_error = excluded.last_error,
            attempts = excluded.attempts,
            updated_at = excluded.updated_at
        """,
        (session_id, last_error, attempts, now, now),
    )


def remove_entry(conn: sqlite3.Connection, session_id: str) -> bool:
    cur = conn.execute("DELETE FROM sync_queue WHERE session_id = ?", (session_id,))
    return cur.rowcount > 0


def record_attempt(
    conn: sqlite3.Connection,
    session_id: str,
    *,
    action: str,
    ok: bool,
    outcome: str,
    error: str | None = None,
    attempts: int = 0,
) -> None:
    conn.execute(
        """
        INSERT INTO sync_attempts(session_id, action, ok, outcome, error, attempts, finished_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (session_id, action, 1 if ok else 0, outcome, error, attempts, _now_iso()),
    )


class SyncQueue:
    """Durable set of sessions whose latest remote write has not been acknowledged.

    Shares the record store's connection and lock, so every read-then-write on
    the queue is serialized with record mutations.
    """

    def __init__(self, store: RecordStore, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self.conn = store.conn
        self.lock = store.lock
        self.max_attempts = max(1, int(max_attempts))

    def entries(self) -> list[QueueEntry]:
        with self.lock:
            rows = self.conn.execute(
                """
                SELECT session_id, last_error, attempts, enqueued_at, updated_at
                FROM sync_queue
                ORDER BY enqueued_at ASC, session_id ASC
                """
            ).fetchall()
        return [_entry_from_row(row) for row in rows]

    def get(self, session_id: str) -> QueueEntry | None:
        with self.lock:
            return load_entry(self.conn, session_id)

    def pending_ids(self) -> list[str]:
        return [entry.session_id for entry in self.entries()]

    def errors(self) -> dict[str, dict[str, Any]]:
        return {
            entry.session_id: {"error": entry.last_error, "attempts": entry.attempts}
            for entry in self.entries()
        }

    def count(self) -> int:
        with self.lock:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM sync_queue").fetchone()
        return int(row["n"] or 0)

    def mark_failed(
        self, session_id: str, error: str, *, action: str = "create"
    ) -> QueueEntry | None:
        """Count one more consecutive failure; returns None once the ceiling is passed."""
        with self.lock:
            existing = load_entry(self.conn, session_id)
            attempts = (existing.attempts if existing else 0) + 1
            if attempts > self.max_attempts:
                remove_entry(self.conn, session_id)
                record_attempt(
                    self.conn,
                    session_id,
                    action=action,
                    ok=False,
                    outcome=OUTCOME_DROPPED,
                    error=error,
                    attempts=attempts,
                )
                self.conn.commit()
                logger.warning(
                    "sync gave up on session %s after %d attempts: %s",
                    session_id,
                    attempts,
                    error,
                )
                return None
            upsert_entry(self.conn, session_id, last_error=error, attempts=attempts)
            record_attempt(
                self.conn,
                session_id,
                action=action,
                ok=False,
                outcome=OUTCOME_QUEUED,
                error=error,
                attempts=attempts,
            )
            self.conn.commit()
            return load_entry(self.conn, session_id)

    def mark_success(self, session_id: str, *, action: str = "create") -> None:
        with self.lock:
            remove_entry(self.conn, session_id)
            record_attempt(self.conn, session_id, action=action, ok=True, outcome=OUTCOME_SYNCED)
            self.conn.commit()

    def reject(self, session_id: str, error: str, *, action: str = "create") -> None:
        """Drop a write the remote store refused outright; no attempt is counted."""
        with self.lock:
            existing = load_entry(self.conn, session_id)
            remove_entry(self.conn, session_id)
            record_attempt(
                self.conn,
                session_id,
                action=action,
                ok=False,
                outcome=OUTCOME_REJECTED,
                error=error,
                attempts=existing.attempts if existing else 0,
            )
            self.conn.commit()
        logger.warning("sync rejected for session %s: %s", session_id, error)

    def hold(self, session_id: str, error: str, *, action: str = "create") -> QueueEntry | None:
        """Keep a write pending without spending an attempt (credentials went bad)."""
        with self.lock:
            existing = load_entry(self.conn, session_id)
            attempts = existing.attempts if existing else 0
            upsert_entry(self.conn, session_id, last_error=error, attempts=attempts)
            record_attempt(
                self.conn,
                session_id,
                action=action,
                ok=False,
                outcome=OUTCOME_AUTH,
                error=error,
                attempts=attempts,
            )
            self.conn.commit()
            return load_entry(self.conn, session_id)

    def note_stale(self, session_id: str, *, action: str, error: str | None = None) -> None:
        with self.lock:
            record_attempt(
                self.conn,
                session_id,
                action=action,
                ok=error is None,
                outcome=OUTCOME_STALE,
                error=error,
            )
            self.conn.commit()

    def remove(self, session_id: str) -> bool:
        with self.lock:
            removed = remove_entry(self.conn, session_id)
            self.conn.commit()
        return removed

    def clear(self) -> int:
        with self.lock:
            cur = self.conn.execute("DELETE FROM sync_queue")
            self.conn.commit()
        return int(cur.rowcount or 0)

    def recent_attempts(self, limit: int = 10) -> list[dict[str, Any]]:
        with self.lock:
            rows = self.conn.execute(
                """
                SELECT session_id, action, ok, outcome, error, attempts, finished_at
                FROM sync_attempts
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            {
                "session_id": row["session_id"],
                "action": row["action"],
                "ok": bool(row["ok"]),
                "outcome": row["outcome"],
                "error": row["error"],
                "attempts": int(row["attempts"] or 0),
                "finished_at": row["finished_at"],
            }
            for row in rows
        ]

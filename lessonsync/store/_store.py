from __future__ import annotations

import datetime as dt
import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .. import db
from ..records import STATUS_COMPLETED, SessionRecord, now_ms, status_rank
from . import queue as store_queue

logger = logging.getLogger(__name__)

CURRENT_SESSION_KEY = "current_session_id"


@dataclass(frozen=True)
class RecordChange:
    before: SessionRecord
    after: SessionRecord

    @property
    def completed(self) -> bool:
        return self.before.status != STATUS_COMPLETED and self.after.status == STATUS_COMPLETED


class RecordStore:
    """Authoritative local collection of session records, most recent first.

    Reads are served from memory; every mutation is written through to sqlite
    before it returns so the collection survives a restart. Callers always get
    deep copies back, never the instances held by the store.
    """

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        check_same_thread: bool = False,
    ):
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.initialize_schema(self.conn)
        self.lock = threading.RLock()
        self._records: dict[str, SessionRecord] = {}
        self._order: list[str] = []
        self._current_id: str | None = None
        self._load()

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def _now_iso(self) -> str:
        return dt.datetime.now(dt.UTC).isoformat()

    def _load(self) -> None:
        rows = self.conn.execute(
            "SELECT id, payload_json FROM sessions ORDER BY position ASC, created_at DESC"
        ).fetchall()
        for row in rows:
            try:
                record = SessionRecord.from_dict(json.loads(row["payload_json"]))
            except (ValueError, TypeError) as exc:
                logger.warning("skipping unreadable session row %s: %s", row["id"], exc)
                continue
            self._records[record.id] = record
            self._order.append(record.id)
        current = db.get_state(self.conn, CURRENT_SESSION_KEY)
        self._current_id = current if current in self._records else None

    def _write_record(self, record: SessionRecord, position: int) -> None:
        self.conn.execute(
            """
            INSERT INTO sessions(id, position, created_at, status, payload_json, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                position = excluded.position,
                created_at = excluded.created_at,
                status = excluded.status,
                payload_json = excluded.payload_json,
                updated_at = excluded.updated_at
            """,
            (
                record.id,
                position,
                record.created_at,
                record.status,
                db.to_json(record.to_dict()),
                self._now_iso(),
            ),
        )

    def _set_current_id(self, session_id: str | None) -> None:
        self._current_id = session_id
        if session_id is None:
            db.delete_state(self.conn, CURRENT_SESSION_KEY)
        else:
            db.set_state(self.conn, CURRENT_SESSION_KEY, session_id)

    def create(self, record: SessionRecord) -> SessionRecord:
        """Insert at the head and make it current; an existing id is replaced."""
        stored = record.snapshot()
        with self.lock:
            if stored.id in self._records:
                self._order.remove(stored.id)
            row = self.conn.execute("SELECT MIN(position) AS p FROM sessions").fetchone()
            head = int(row["p"]) - 1 if row and row["p"] is not None else 0
            self._write_record(stored, head)
            self._set_current_id(stored.id)
            self.conn.commit()
            self._records[stored.id] = stored
            self._order.insert(0, stored.id)
        return stored.snapshot()

    def update(self, session_id: str, fields: dict[str, Any]) -> RecordChange | None:
        with self.lock:
            before = self._records.get(session_id)
            if before is None:
                return None
            after = before.with_fields(fields)
            if status_rank(after.status) < status_rank(before.status):
                raise ValueError(
                    f"session {session_id} cannot move from {before.status} to {after.status}"
                )
            if (
                after.status == STATUS_COMPLETED
                and before.status != STATUS_COMPLETED
                and after.completed_at is None
            ):
                after = after.with_fields({"completed_at": now_ms()})
            self._write_record(after, self._position_of(session_id))
            self.conn.commit()
            self._records[session_id] = after
        return RecordChange(before=before.snapshot(), after=after.snapshot())

    def _position_of(self, session_id: str) -> int:
        row = self.conn.execute(
            "SELECT position FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return int(row["position"]) if row else self._order.index(session_id)

    def update_score(self, session_id: str, fields: dict[str, Any]) -> RecordChange | None:
        with self.lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            score = {**record.score, **fields}
            return self.update(session_id, {"score": score})

    def update_topic(
        self, session_id: str, topic_index: int, fields: dict[str, Any]
    ) -> RecordChange | None:
        with self.lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            topics = [dict(topic) for topic in record.topics]
            if not 0 <= topic_index < len(topics):
                raise IndexError(f"topic index {topic_index} out of range")
            topics[topic_index] = {**topics[topic_index], **fields}
            return self.update(session_id, {"topics": topics})

    def update_question(
        self,
        session_id: str,
        topic_index: int,
        question_index: int,
        fields: dict[str, Any],
    ) -> RecordChange | None:
        with self.lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            topics = [dict(topic) for topic in record.topics]
            if not 0 <= topic_index < len(topics):
                raise IndexError(f"topic index {topic_index} out of range")
            raw_questions = topics[topic_index].get("questions") or []
            if not isinstance(raw_questions, list) or not all(
                isinstance(q, dict) for q in raw_questions
            ):
                raise ValueError(f"topic {topic_index} questions must be a list of objects")
            questions = [dict(q) for q in raw_questions]
            if not 0 <= question_index < len(questions):
                raise IndexError(f"question index {question_index} out of range")
            questions[question_index] = {**questions[question_index], **fields}
            topics[topic_index] = {**topics[topic_index], "questions": questions}
            return self.update(session_id, {"topics": topics})

    def delete(self, session_id: str) -> bool:
        """Remove the record and any pending sync entry for it."""
        with self.lock:
            if session_id not in self._records:
                store_queue.remove_entry(self.conn, session_id)
                self.conn.commit()
                return False
            self.conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            self.conn.execute("DELETE FROM remote_sessions WHERE session_id = ?", (session_id,))
            store_queue.remove_entry(self.conn, session_id)
            if self._current_id == session_id:
                self._set_current_id(None)
            self.conn.commit()
            del self._records[session_id]
            self._order.remove(session_id)
        return True

    def get(self, session_id: str) -> SessionRecord | None:
        with self.lock:
            record = self._records.get(session_id)
            return record.snapshot() if record else None

    def exists(self, session_id: str) -> bool:
        with self.lock:
            return session_id in self._records

    def list(self) -> list[SessionRecord]:
        with self.lock:
            return [self._records[session_id].snapshot() for session_id in self._order]

    def stored_payloads(self) -> list[tuple[str, str]]:
        """Raw (id, payload_json) rows, including ones that no longer parse."""
        with self.lock:
            rows = self.conn.execute(
                "SELECT id, payload_json FROM sessions ORDER BY position ASC, created_at DESC"
            ).fetchall()
        return [(str(row["id"]), str(row["payload_json"] or "")) for row in rows]

    def count(self) -> int:
        with self.lock:
            return len(self._order)

    def current(self) -> SessionRecord | None:
        with self.lock:
            if self._current_id is None:
                return None
            return self.get(self._current_id)

    def set_current(self, session_id: str | None) -> None:
        with self.lock:
            if session_id is not None and session_id not in self._records:
                raise KeyError(session_id)
            self._set_current_id(session_id)
            self.conn.commit()

    def replace_all(self, records: Iterable[SessionRecord]) -> None:
        """Install a whole new collection in the given order."""
        installed = [record.snapshot() for record in records]
        ids = [record.id for record in installed]
        if len(set(ids)) != len(ids):
            raise ValueError("duplicate session ids in replacement set")
        with self.lock:
            current_id = self._current_id
            try:
                self.conn.execute("DELETE FROM sessions")
                for position, record in enumerate(installed):
                    self._write_record(record, position)
                if current_id not in ids:
                    self._set_current_id(None)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                self._current_id = current_id
                raise
            self._records = {record.id: record for record in installed}
            self._order = ids

    def clear(self) -> int:
        with self.lock:
            removed = len(self._order)
            self.conn.execute("DELETE FROM sessions")
            self.conn.execute("DELETE FROM sync_queue")
            self.conn.execute("DELETE FROM remote_sessions")
            self._set_current_id(None)
            self.conn.commit()
            self._records = {}
            self._order = []
        return removed

    def get_state(self, key: str, default: Any = None) -> Any:
        with self.lock:
            return db.get_state(self.conn, key, default)

    def set_state(self, key: str, value: Any) -> None:
        with self.lock:
            db.set_state(self.conn, key, value)
            self.conn.commit()

    def remote_id_for(self, session_id: str) -> str:
        with self.lock:
            row = self.conn.execute(
                "SELECT remote_id FROM remote_sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return str(row["remote_id"]) if row else session_id

    def remember_remote_id(self, session_id: str, remote_id: str) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO remote_sessions(session_id, remote_id, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    remote_id = excluded.remote_id,
                    updated_at = excluded.updated_at
                """,
                (session_id, remote_id, self._now_iso()),
            )
            self.conn.commit()

    def forget_remote_id(self, session_id: str) -> None:
        with self.lock:
            self.conn.execute("DELETE FROM remote_sessions WHERE session_id = ?", (session_id,))
            self.conn.commit()

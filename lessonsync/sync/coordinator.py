from __future__ import annotations

import datetime as dt
import logging
import threading

from ..auth import AuthCapability
from ..errors import AuthError, NotFoundError, SyncError
from ..records import SessionRecord
from ..store import RecordChange, RecordStore, SyncQueue
from .gateway import RemoteGateway
from .reconcile import reconcile
from .worker import SyncOutcome, SyncTask, SyncWorker

logger = logging.getLogger(__name__)

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_COMPLETE = "complete"
ACTION_DELETE = "delete"
ACTION_COMMITMENT = "commitment"

RETRY_BATCH = "retry"
LAST_SYNCED_AT_KEY = "last_synced_at"


def _describe(exc: BaseException) -> str:
    return str(exc).strip() or exc.__class__.__name__


def _minutes_spent(record: SessionRecord) -> int:
    if record.completed_at is None:
        return 0
    elapsed_ms = max(0, record.completed_at - record.created_at)
    return max(1, round(elapsed_ms / 60000))


class SyncCoordinator:
    """Pushes local mutations to the remote store in the background.

    Local writes have already landed in the record store by the time any
    method here is called; nothing in this class ever blocks on the network
    except ``sync_with_cloud``.
    """

    def __init__(
        self,
        store: RecordStore,
        queue: SyncQueue,
        gateway: RemoteGateway,
        auth: AuthCapability,
        *,
        workers: int = 2,
    ) -> None:
        self.store = store
        self.queue = queue
        self.gateway = gateway
        self.auth = auth
        self._worker = SyncWorker(self._handle_outcome, workers=workers)
        self._lock = threading.Lock()
        self._syncing = False
        self._retry_running = False
        self._retry_outstanding = 0

    def start(self) -> None:
        self._worker.start()

    def close(self, timeout: float | None = 5.0) -> None:
        self._worker.stop(timeout)

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self._worker.wait_idle(timeout)

    @property
    def is_syncing(self) -> bool:
        with self._lock:
            return self._syncing

    @property
    def retry_running(self) -> bool:
        with self._lock:
            return self._retry_running

    def last_synced_at(self) -> str | None:
        return self.store.get_state(LAST_SYNCED_AT_KEY)

    def _submit_write(
        self, record: SessionRecord, action: str, *, batch: str | None = None
    ) -> None:
        snapshot = record.snapshot()
        if action == ACTION_CREATE:

            def run() -> str:
                return self.gateway.create(snapshot)

        else:

            def run() -> None:
                remote_id = self.store.remote_id_for(snapshot.id)
                fields = {"status": snapshot.status, "payload": snapshot.to_dict()}
                self.gateway.update(remote_id, fields)
                if action == ACTION_COMPLETE:
                    self.gateway.complete(remote_id)

        self._worker.submit(SyncTask(session_id=snapshot.id, action=action, run=run, batch=batch))

    def on_create(self, record: SessionRecord) -> None:
        if not self.auth.is_authenticated():
            return
        self._submit_write(record, ACTION_CREATE)

    def on_update(self, change: RecordChange) -> None:
        if not self.auth.is_authenticated():
            return
        action = ACTION_COMPLETE if change.completed else ACTION_UPDATE
        self._submit_write(change.after, action)

    def on_delete(self, session_id: str, remote_id: str) -> None:
        if not self.auth.is_authenticated():
            return
        self._worker.submit(
            SyncTask(
                session_id=session_id,
                action=ACTION_DELETE,
                run=lambda: self.gateway.delete(remote_id),
            )
        )

    def retry_pending_syncs(self) -> int:
        """Re-issue a create-style write for every queued session.

        Returns how many writes were dispatched. A call made while an earlier
        retry pass still has writes in flight does nothing and returns 0.
        """
        if not self.auth.is_authenticated():
            return 0
        with self._lock:
            if self._retry_running:
                return 0
            self._retry_running = True
            self._retry_outstanding = 0
        records: list[SessionRecord] = []
        try:
            with self.store.lock:
                for entry in self.queue.entries():
                    if entry.attempts > self.queue.max_attempts:
                        continue
                    record = self.store.get(entry.session_id)
                    if record is None:
                        self.queue.remove(entry.session_id)
                        continue
                    records.append(record)
            with self._lock:
                self._retry_outstanding = len(records)
                if not records:
                    self._retry_running = False
            for record in records:
                self._submit_write(record, ACTION_CREATE, batch=RETRY_BATCH)
        except Exception:
            with self._lock:
                self._retry_running = False
                self._retry_outstanding = 0
            raise
        return len(records)

    def sync_with_cloud(self) -> bool:
        """Pull the remote snapshot, merge it into the store, then drain the queue."""
        if not self.auth.is_authenticated():
            return False
        with self._lock:
            if self._syncing:
                return False
            self._syncing = True
        try:
            remote = self.gateway.list()
            with self.store.lock:
                merged = reconcile(self.store.list(), [item.record for item in remote])
                self.store.replace_all(merged)
                for item in remote:
                    self.store.remember_remote_id(item.record.id, item.remote_id)
                self.store.set_state(LAST_SYNCED_AT_KEY, dt.datetime.now(dt.UTC).isoformat())
            logger.info("synced %d remote sessions into %d local", len(remote), len(merged))
        except AuthError as exc:
            logger.warning("sync with cloud rejected credentials: %s", exc)
            self.auth.logout()
            return False
        except Exception as exc:
            logger.exception("sync with cloud failed", exc_info=exc)
            return False
        finally:
            with self._lock:
                self._syncing = False
        self.retry_pending_syncs()
        return True

    def _handle_outcome(self, outcome: SyncOutcome) -> None:
        task = outcome.task
        try:
            if task.action == ACTION_COMMITMENT:
                if not outcome.ok:
                    logger.warning(
                        "commitment log failed for session %s: %s",
                        task.session_id,
                        _describe(outcome.error or RuntimeError()),
                    )
            elif task.action == ACTION_DELETE:
                self._handle_delete(outcome)
            else:
                self._handle_write(outcome)
        finally:
            if task.batch == RETRY_BATCH:
                with self._lock:
                    self._retry_outstanding -= 1
                    if self._retry_outstanding <= 0:
                        self._retry_outstanding = 0
                        self._retry_running = False

    def _handle_delete(self, outcome: SyncOutcome) -> None:
        session_id = outcome.task.session_id
        if outcome.ok or isinstance(outcome.error, NotFoundError):
            self.queue.note_stale(session_id, action=ACTION_DELETE)
            return
        error = _describe(outcome.error) if outcome.error else "unknown error"
        logger.warning("remote delete failed for session %s: %s", session_id, error)
        self.queue.note_stale(session_id, action=ACTION_DELETE, error=error)
        if isinstance(outcome.error, AuthError):
            self.auth.logout()

    def _handle_write(self, outcome: SyncOutcome) -> None:
        task = outcome.task
        session_id = task.session_id
        logout = False
        with self.store.lock:
            if not self.store.exists(session_id):
                # Deleted while the write was in flight; the deletion is final.
                self.queue.remove(session_id)
                self.queue.note_stale(
                    session_id,
                    action=task.action,
                    error=None if outcome.ok else _describe(outcome.error or RuntimeError()),
                )
                orphan = outcome.result if task.action == ACTION_CREATE else None
                if outcome.ok and isinstance(orphan, str) and orphan != session_id:
                    self.on_delete(session_id, orphan)
                return
            if outcome.ok:
                if task.action == ACTION_CREATE and isinstance(outcome.result, str):
                    self.store.remember_remote_id(session_id, outcome.result)
                self.queue.mark_success(session_id, action=task.action)
            else:
                error = outcome.error or RuntimeError("unknown error")
                if isinstance(error, AuthError):
                    self.queue.hold(session_id, _describe(error), action=task.action)
                    logout = True
                elif isinstance(error, SyncError) and not error.retryable:
                    self.queue.reject(session_id, _describe(error), action=task.action)
                else:
                    self.queue.mark_failed(session_id, _describe(error), action=task.action)
            record = self.store.get(session_id)
        if logout:
            logger.warning("sync for session %s rejected credentials; logging out", session_id)
            self.auth.logout()
        if outcome.ok and task.action == ACTION_COMPLETE and record is not None:
            self._log_commitment(record)

    def _log_commitment(self, record: SessionRecord) -> None:
        questions = record.score.get("questionsAnswered", 0)
        questions_answered = int(questions) if isinstance(questions, int | float) else 0
        minutes = _minutes_spent(record)
        self._worker.submit(
            SyncTask(
                session_id=record.id,
                action=ACTION_COMMITMENT,
                run=lambda: self.gateway.log_commitment(record.id, minutes, questions_answered),
            )
        )

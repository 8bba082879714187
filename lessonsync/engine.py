from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from . import db
from .auth import AuthCapability, TokenAuth
from .config import LessonSyncConfig, load_config
from .records import STATUS_ACTIVE, STATUS_COMPLETED, SessionRecord, now_ms
from .store import RecordChange, RecordStore, SyncQueue
from .sync.coordinator import SyncCoordinator
from .sync.gateway import HttpRemoteGateway, RemoteGateway
from .sync.migration import MigrationDriver, MigrationResult

logger = logging.getLogger(__name__)


class SessionSyncEngine:
    """Application-facing session API: local-first writes with background sync.

    Every mutation is applied to the record store and is visible through
    ``get_session`` before this object hands the remote write to the
    coordinator.
    """

    def __init__(
        self,
        store: RecordStore,
        gateway: RemoteGateway,
        auth: AuthCapability,
        *,
        max_sync_attempts: int = 3,
        sync_workers: int = 2,
    ) -> None:
        self.store = store
        self.auth = auth
        self.gateway = gateway
        self.queue = SyncQueue(store, max_attempts=max_sync_attempts)
        self.coordinator = SyncCoordinator(
            store, self.queue, gateway, auth, workers=sync_workers
        )
        self.migration = MigrationDriver(store, gateway, auth)
        self._background_lock = threading.Lock()
        self._background: list[threading.Thread] = []
        self._closed = False
        self.coordinator.start()

    @classmethod
    def from_config(
        cls,
        cfg: LessonSyncConfig | None = None,
        *,
        db_path: Path | str | None = None,
        auth: AuthCapability | None = None,
    ) -> SessionSyncEngine:
        cfg = cfg or load_config()
        token_auth = auth or TokenAuth(cfg.api_token)
        store = RecordStore(db_path or cfg.db_path or db.DEFAULT_DB_PATH)
        gateway = HttpRemoteGateway(
            cfg.api_base_url,
            token_auth,
            timeout_s=cfg.request_timeout_s,
            page_size=cfg.list_page_size,
        )
        engine = cls(
            store,
            gateway,
            token_auth,
            max_sync_attempts=cfg.max_sync_attempts,
            sync_workers=cfg.sync_workers,
        )
        if isinstance(token_auth, TokenAuth):
            token_auth.subscribe(on_login=engine.sync_in_background)
        return engine

    def close(self, timeout: float | None = 5.0) -> None:
        with self._background_lock:
            self._closed = True
            threads, self._background = self._background, []
        for thread in threads:
            thread.join(timeout)
        self.coordinator.close(timeout)
        self.store.close()

    def __enter__(self) -> SessionSyncEngine:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self.coordinator.wait_idle(timeout)

    # Sessions

    def create_session(self, record: SessionRecord) -> SessionRecord:
        created = self.store.create(record)
        self.coordinator.on_create(created)
        return created

    def _after_update(self, change: RecordChange | None) -> SessionRecord | None:
        if change is None:
            return None
        self.coordinator.on_update(change)
        return change.after

    def update_session(self, session_id: str, fields: dict[str, Any]) -> SessionRecord | None:
        return self._after_update(self.store.update(session_id, fields))

    def update_score(self, session_id: str, fields: dict[str, Any]) -> SessionRecord | None:
        return self._after_update(self.store.update_score(session_id, fields))

    def update_topic(
        self, session_id: str, topic_index: int, fields: dict[str, Any]
    ) -> SessionRecord | None:
        return self._after_update(self.store.update_topic(session_id, topic_index, fields))

    def update_question(
        self,
        session_id: str,
        topic_index: int,
        question_index: int,
        fields: dict[str, Any],
    ) -> SessionRecord | None:
        return self._after_update(
            self.store.update_question(session_id, topic_index, question_index, fields)
        )

    def delete_session(self, session_id: str) -> bool:
        with self.store.lock:
            remote_id = self.store.remote_id_for(session_id)
            deleted = self.store.delete(session_id)
        if deleted:
            self.coordinator.on_delete(session_id, remote_id)
        return deleted

    def get_session(self, session_id: str) -> SessionRecord | None:
        return self.store.get(session_id)

    def list_sessions(self) -> list[SessionRecord]:
        return self.store.list()

    def current_session(self) -> SessionRecord | None:
        return self.store.current()

    def set_current_session(self, session_id: str | None) -> None:
        self.store.set_current(session_id)

    def pause_session(self, session_id: str, progress: dict[str, Any]) -> SessionRecord | None:
        return self.update_session(session_id, {"progress": {**progress, "pausedAt": now_ms()}})

    def resume_session(self, session_id: str) -> dict[str, Any] | None:
        """Clear the saved pause state and return it so the caller can restore position."""
        with self.store.lock:
            record = self.store.get(session_id)
            if record is None:
                return None
            fields: dict[str, Any] = {"progress": None}
            if record.status != STATUS_COMPLETED:
                fields["status"] = STATUS_ACTIVE
            self.update_session(session_id, fields)
        return record.progress

    def clear_library(self) -> int:
        return self.store.clear()

    # Sync

    def sync_with_cloud(self) -> bool:
        return self.coordinator.sync_with_cloud()

    def sync_in_background(self) -> None:
        """Run ``sync_with_cloud`` on its own thread; ``close`` waits for it."""
        thread = threading.Thread(
            target=self.coordinator.sync_with_cloud, name="lessonsync-cloud-sync", daemon=True
        )
        with self._background_lock:
            if self._closed:
                return
            self._background = [t for t in self._background if t.is_alive()]
            self._background.append(thread)
            thread.start()

    def retry_pending_syncs(self) -> int:
        return self.coordinator.retry_pending_syncs()

    def get_pending_sync_count(self) -> int:
        return self.queue.count()

    @property
    def pending_sync_sessions(self) -> list[str]:
        return self.queue.pending_ids()

    @property
    def sync_errors(self) -> dict[str, dict[str, Any]]:
        return self.queue.errors()

    @property
    def is_syncing(self) -> bool:
        return self.coordinator.is_syncing

    @property
    def last_synced_at(self) -> str | None:
        return self.coordinator.last_synced_at()

    # Migration

    def get_local_session_count(self) -> int:
        return self.store.count()

    def migrate_local_sessions(self) -> MigrationResult:
        return self.migration.migrate()

    def dismiss_migration(self) -> None:
        self.migration.dismiss()

    @property
    def migration_dismissed(self) -> bool:
        return self.migration.dismissed()

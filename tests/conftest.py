from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from lessonsync.auth import TokenAuth
from lessonsync.engine import SessionSyncEngine
from lessonsync.records import SessionRecord
from lessonsync.store import RecordStore
from lessonsync.sync.gateway import RemoteSessionRecord


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("LESSONSYNC_CONFIG", str(tmp_path / "config.json"))
    for name in (
        "LESSONSYNC_API_BASE_URL",
        "LESSONSYNC_API_TOKEN",
        "LESSONSYNC_DB",
        "LESSONSYNC_MAX_SYNC_ATTEMPTS",
        "LESSONSYNC_SYNC_WORKERS",
        "LESSONSYNC_REQUEST_TIMEOUT_S",
        "LESSONSYNC_LIST_PAGE_SIZE",
    ):
        monkeypatch.delenv(name, raising=False)


class FakeGateway:
    """In-memory remote store that records every call it receives."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []
        self.remote: dict[str, RemoteSessionRecord] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.always_fail: dict[str, Exception] = {}
        self.gate: threading.Event | None = None
        self.entered = threading.Event()

    def fail_next(self, action: str, *errors: Exception) -> None:
        with self.lock:
            self.failures.setdefault(action, []).extend(errors)

    def calls_for(self, action: str) -> list[str]:
        with self.lock:
            return [target for name, target in self.calls if name == action]

    def _enter(self, action: str, target: str) -> None:
        with self.lock:
            self.calls.append((action, target))
            pending = self.failures.get(action)
            error = pending.pop(0) if pending else self.always_fail.get(action)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if error is not None:
            raise error

    def create(self, record: SessionRecord) -> str:
        self._enter("create", record.id)
        remote_id = f"remote-{record.id}"
        with self.lock:
            self.remote[record.id] = RemoteSessionRecord(remote_id=remote_id, record=record)
        return remote_id

    def update(self, remote_id: str, fields: dict[str, Any]) -> None:
        self._enter("update", remote_id)

    def complete(self, remote_id: str) -> None:
        self._enter("complete", remote_id)

    def delete(self, remote_id: str) -> None:
        self._enter("delete", remote_id)

    def list(self) -> list[RemoteSessionRecord]:
        self._enter("list", "")
        with self.lock:
            return [self.remote[key] for key in sorted(self.remote)]

    def log_commitment(self, session_id: str, minutes_spent: int, questions_answered: int) -> None:
        self._enter("commitment", f"{session_id}:{minutes_spent}:{questions_answered}")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def auth() -> TokenAuth:
    return TokenAuth("test-token")


@pytest.fixture
def make_engine(
    tmp_path: Path, gateway: FakeGateway, auth: TokenAuth
) -> Iterator[Callable[..., SessionSyncEngine]]:
    engines: list[SessionSyncEngine] = []

    def _make(**kwargs: Any) -> SessionSyncEngine:
        kwargs.setdefault("sync_workers", 1)
        store = RecordStore(tmp_path / "lessons.sqlite")
        engine = SessionSyncEngine(store, gateway, auth, **kwargs)
        engines.append(engine)
        return engine

    yield _make
    if gateway.gate is not None:
        gateway.gate.set()
    for engine in engines:
        engine.close()

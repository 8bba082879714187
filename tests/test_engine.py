from __future__ import annotations

import threading

import pytest

from lessonsync.errors import (
    AuthError,
    NetworkError,
    NotFoundError,
    SyncError,
    ValidationError,
)
from lessonsync.records import SessionRecord, now_ms
from lessonsync.sync.gateway import RemoteSessionRecord


def _session(session_id: str, created_at: int | None = None, **fields) -> SessionRecord:
    return SessionRecord(
        id=session_id, created_at=created_at if created_at is not None else now_ms(), **fields
    )


def test_local_write_visible_before_remote_ack(make_engine, gateway) -> None:
    gateway.gate = threading.Event()
    engine = make_engine()

    engine.create_session(_session("s1"))

    assert gateway.entered.wait(5)
    assert engine.get_session("s1") is not None
    assert engine.current_session().id == "s1"
    assert gateway.remote == {}

    gateway.gate.set()
    assert engine.wait_idle(5)
    assert gateway.calls_for("create") == ["s1"]
    assert engine.get_pending_sync_count() == 0
    assert engine.store.remote_id_for("s1") == "remote-s1"


def test_failed_create_is_queued_with_error(make_engine, gateway) -> None:
    gateway.fail_next("create", NetworkError("offline"))
    engine = make_engine()

    engine.create_session(_session("s1"))
    assert engine.wait_idle(5)

    assert engine.get_session("s1") is not None
    assert engine.pending_sync_sessions == ["s1"]
    assert engine.sync_errors == {"s1": {"error": "offline", "attempts": 1}}


def test_retry_ceiling_drops_entry_after_fourth_failure(make_engine, gateway) -> None:
    gateway.always_fail["create"] = NetworkError("offline")
    engine = make_engine(max_sync_attempts=3)

    engine.create_session(_session("s1"))
    assert engine.wait_idle(5)
    for expected_attempts in (2, 3):
        assert engine.retry_pending_syncs() == 1
        assert engine.wait_idle(5)
        assert engine.sync_errors["s1"]["attempts"] == expected_attempts

    assert engine.retry_pending_syncs() == 1
    assert engine.wait_idle(5)
    assert engine.pending_sync_sessions == []

    assert engine.retry_pending_syncs() == 0
    assert engine.wait_idle(5)
    assert len(gateway.calls_for("create")) == 4
    assert engine.get_session("s1") is not None


def test_new_mutation_restarts_attempt_counting(make_engine, gateway) -> None:
    gateway.always_fail["create"] = NetworkError("offline")
    gateway.always_fail["update"] = NetworkError("offline")
    engine = make_engine(max_sync_attempts=1)

    engine.create_session(_session("s1"))
    assert engine.wait_idle(5)
    assert engine.retry_pending_syncs() == 1
    assert engine.wait_idle(5)
    assert engine.pending_sync_sessions == []

    engine.update_session("s1", {"status": "active"})
    assert engine.wait_idle(5)
    assert engine.sync_errors == {"s1": {"error": "offline", "attempts": 1}}


def test_successful_retry_clears_queue(make_engine, gateway) -> None:
    gateway.fail_next("create", NetworkError("offline"))
    engine = make_engine()

    engine.create_session(_session("s1"))
    assert engine.wait_idle(5)
    assert engine.retry_pending_syncs() == 1
    assert engine.wait_idle(5)

    assert engine.get_pending_sync_count() == 0
    assert engine.sync_errors == {}
    assert gateway.calls_for("create") == ["s1", "s1"]


def test_delete_wins_over_pending_retry(make_engine, gateway) -> None:
    gateway.fail_next("create", NetworkError("offline"))
    engine = make_engine()

    engine.create_session(_session("s1"))
    assert engine.wait_idle(5)
    assert engine.pending_sync_sessions == ["s1"]

    assert engine.delete_session("s1") is True
    assert engine.wait_idle(5)

    assert engine.get_session("s1") is None
    assert engine.get_pending_sync_count() == 0
    assert engine.retry_pending_syncs() == 0
    assert gateway.calls_for("create") == ["s1"]
    assert gateway.calls_for("delete") == ["s1"]


def test_write_finishing_after_delete_does_not_resurrect(make_engine, gateway) -> None:
    gateway.gate = threading.Event()
    engine = make_engine()

    engine.create_session(_session("s1"))
    assert gateway.entered.wait(5)
    engine.delete_session("s1")
    gateway.gate.set()
    assert engine.wait_idle(5)

    assert engine.get_session("s1") is None
    assert engine.get_pending_sync_count() == 0
    assert sorted(gateway.calls_for("delete")) == ["remote-s1", "s1"]
    outcomes = [attempt["outcome"] for attempt in engine.queue.recent_attempts(limit=5)]
    assert "stale" in outcomes


def test_validation_failure_is_dropped(make_engine, gateway) -> None:
    gateway.fail_next("create", ValidationError("session create failed (422: bad payload)"))
    engine = make_engine()

    engine.create_session(_session("s1"))
    assert engine.wait_idle(5)

    assert engine.get_pending_sync_count() == 0
    assert engine.get_session("s1") is not None
    latest = engine.queue.recent_attempts(limit=1)[0]
    assert latest["outcome"] == "rejected"


def test_auth_failure_keeps_entry_and_logs_out(make_engine, gateway, auth) -> None:
    gateway.fail_next("create", AuthError("session create failed (401)"))
    engine = make_engine()

    engine.create_session(_session("s1"))
    assert engine.wait_idle(5)

    assert not auth.is_authenticated()
    assert engine.sync_errors == {"s1": {"error": "session create failed (401)", "attempts": 0}}
    assert engine.retry_pending_syncs() == 0


def test_missing_remote_record_is_recreated_on_retry(make_engine, gateway) -> None:
    engine = make_engine()
    engine.create_session(_session("s1"))
    assert engine.wait_idle(5)

    gateway.fail_next("update", NotFoundError("session update failed (404)"))
    engine.update_session("s1", {"status": "active"})
    assert engine.wait_idle(5)
    assert engine.sync_errors["s1"]["attempts"] == 1

    assert engine.retry_pending_syncs() == 1
    assert engine.wait_idle(5)
    assert engine.get_pending_sync_count() == 0
    assert gateway.calls_for("create") == ["s1", "s1"]


def test_completion_pushes_update_complete_and_commitment(make_engine, gateway) -> None:
    engine = make_engine()
    engine.create_session(_session("s1", created_at=now_ms() - 30 * 60_000, status="active"))
    assert engine.wait_idle(5)

    engine.update_score("s1", {"questionsAnswered": 4})
    updated = engine.update_session("s1", {"status": "completed"})
    assert engine.wait_idle(5)

    assert updated is not None
    assert updated.completed_at is not None
    assert gateway.calls_for("update") == ["remote-s1", "remote-s1"]
    assert gateway.calls_for("complete") == ["remote-s1"]
    assert gateway.calls_for("commitment") == ["s1:30:4"]
    assert engine.get_pending_sync_count() == 0


def test_commitment_failure_is_not_queued(make_engine, gateway) -> None:
    gateway.always_fail["commitment"] = NetworkError("offline")
    engine = make_engine()
    engine.create_session(_session("s1", status="active"))

    engine.update_session("s1", {"status": "completed"})
    assert engine.wait_idle(5)

    assert len(gateway.calls_for("commitment")) == 1
    assert engine.get_pending_sync_count() == 0


def test_status_regression_is_refused(make_engine) -> None:
    engine = make_engine()
    engine.create_session(_session("s1", status="completed"))

    with pytest.raises(ValueError):
        engine.update_session("s1", {"status": "active"})
    assert engine.get_session("s1").status == "completed"


def test_retry_is_single_flight(make_engine, gateway) -> None:
    gateway.fail_next("create", NetworkError("offline"), NetworkError("offline"))
    engine = make_engine()
    engine.create_session(_session("a"))
    engine.create_session(_session("b"))
    assert engine.wait_idle(5)
    assert engine.get_pending_sync_count() == 2

    gateway.gate = threading.Event()
    assert engine.retry_pending_syncs() == 2
    assert engine.retry_pending_syncs() == 0
    assert engine.coordinator.retry_running

    gateway.gate.set()
    assert engine.wait_idle(5)
    assert not engine.coordinator.retry_running
    assert engine.get_pending_sync_count() == 0
    assert len(gateway.calls_for("create")) == 4


def test_sync_with_cloud_merges_and_drains_queue(make_engine, gateway) -> None:
    remote_b = SessionRecord(id="B", created_at=200, status="active")
    gateway.remote["B"] = RemoteSessionRecord(remote_id="srv-B", record=remote_b)
    gateway.fail_next("create", NetworkError("offline"))
    engine = make_engine()
    engine.create_session(_session("A", created_at=100))
    assert engine.wait_idle(5)
    assert engine.pending_sync_sessions == ["A"]

    assert engine.sync_with_cloud() is True
    assert engine.wait_idle(5)

    assert [record.id for record in engine.list_sessions()] == ["B", "A"]
    assert engine.store.remote_id_for("B") == "srv-B"
    assert engine.last_synced_at is not None
    assert not engine.is_syncing
    assert engine.get_pending_sync_count() == 0


def test_sync_with_cloud_prefers_newer_local_copy(make_engine, gateway) -> None:
    engine = make_engine()
    engine.create_session(_session("A", created_at=500, status="active"))
    assert engine.wait_idle(5)
    stale = SessionRecord(id="A", created_at=100, status="overview")
    gateway.remote["A"] = RemoteSessionRecord(remote_id="srv-A", record=stale)

    assert engine.sync_with_cloud() is True
    assert engine.wait_idle(5)

    assert engine.get_session("A").status == "active"


def test_failed_list_leaves_local_state_untouched(make_engine, gateway) -> None:
    engine = make_engine()
    engine.create_session(_session("A", created_at=100))
    assert engine.wait_idle(5)
    gateway.fail_next("list", NetworkError("offline"))

    assert engine.sync_with_cloud() is False

    assert [record.id for record in engine.list_sessions()] == ["A"]
    assert engine.last_synced_at is None
    assert not engine.is_syncing


def test_list_auth_failure_logs_out(make_engine, gateway, auth) -> None:
    engine = make_engine()
    gateway.fail_next("list", AuthError("session list failed (401)"))

    assert engine.sync_with_cloud() is False
    assert not auth.is_authenticated()


def test_unauthenticated_engine_stays_local(make_engine, gateway, auth) -> None:
    auth.logout()
    engine = make_engine()

    engine.create_session(_session("s1"))
    engine.update_session("s1", {"status": "active"})
    engine.delete_session("s1")
    assert engine.wait_idle(5)

    assert gateway.calls == []
    assert engine.sync_with_cloud() is False
    assert engine.retry_pending_syncs() == 0


def test_pause_and_resume_round_trip_progress(make_engine) -> None:
    engine = make_engine()
    engine.create_session(_session("s1"))

    paused = engine.pause_session("s1", {"topicIndex": 2, "questionIndex": 1})
    assert paused is not None
    assert paused.progress["topicIndex"] == 2
    assert "pausedAt" in paused.progress

    progress = engine.resume_session("s1")
    assert progress is not None
    assert progress["questionIndex"] == 1
    record = engine.get_session("s1")
    assert record.progress is None
    assert record.status == "active"
    assert engine.resume_session("missing") is None


def test_state_persists_across_engine_restart(make_engine, gateway) -> None:
    gateway.fail_next("create", NetworkError("offline"))
    engine = make_engine()
    engine.create_session(_session("s1"))
    assert engine.wait_idle(5)
    engine.close()

    reopened = make_engine()
    assert reopened.get_session("s1") is not None
    assert reopened.pending_sync_sessions == ["s1"]
    assert reopened.retry_pending_syncs() == 1
    assert reopened.wait_idle(5)
    assert reopened.get_pending_sync_count() == 0


def test_unclassified_exception_counts_as_retryable_failure(make_engine, gateway) -> None:
    gateway.fail_next("create", TimeoutError("timed out"))
    engine = make_engine()

    engine.create_session(_session("s1"))
    assert engine.wait_idle(5)

    assert engine.sync_errors == {"s1": {"error": "timed out", "attempts": 1}}


def test_non_retryable_sync_error_is_dropped(make_engine, gateway) -> None:
    gateway.fail_next("create", SyncError("session create failed (418)"))
    engine = make_engine()

    engine.create_session(_session("s1"))
    assert engine.wait_idle(5)

    assert engine.get_pending_sync_count() == 0
    assert engine.queue.recent_attempts(limit=1)[0]["outcome"] == "rejected"


@pytest.mark.parametrize(
    ("error_type", "retryable"),
    [
        (NetworkError, True),
        (NotFoundError, True),
        (ValidationError, False),
        (AuthError, False),
        (SyncError, False),
    ],
)
def test_retryable_flags(error_type: type[SyncError], retryable: bool) -> None:
    assert error_type("x").retryable is retryable


def test_background_sync_is_joined_on_close(make_engine, gateway) -> None:
    gateway.gate = threading.Event()
    engine = make_engine()

    engine.sync_in_background()
    assert gateway.entered.wait(5)
    release = threading.Timer(0.2, gateway.gate.set)
    release.start()
    engine.close()
    release.join()

    assert gateway.calls_for("list") == [""]
    assert not any(
        thread.name == "lessonsync-cloud-sync" and thread.is_alive()
        for thread in threading.enumerate()
    )


def test_background_sync_after_close_is_ignored(make_engine, gateway) -> None:
    engine = make_engine()
    engine.close()

    engine.sync_in_background()

    assert gateway.calls == []

from __future__ import annotations

from collections.abc import Iterable

from .. import db
from ..records import SessionRecord


def _precedence(record: SessionRecord) -> tuple[int, str]:
    # Equal timestamps fall back to the serialized payload, never to input position.
    return record.created_at, db.to_json(record.to_dict())


def pick_winner(local: SessionRecord, remote: SessionRecord) -> SessionRecord:
    """Whole-record last-writer-wins on createdAt; the remote copy wins ties."""
    if remote.created_at >= local.created_at:
        return remote
    return local


def reconcile(
    local: Iterable[SessionRecord], remote: Iterable[SessionRecord]
) -> list[SessionRecord]:
    """Union of both sides keyed by id, newest first.

    Local-only records are kept as they are (unsynced offline work), remote-only
    records are adopted, and shared ids go through ``pick_winner``. The result
    does not depend on the order of either input, and running it again with the
    same remote snapshot returns the same list.
    """
    merged: dict[str, SessionRecord] = {}
    for record in local:
        seen = merged.get(record.id)
        if seen is None or _precedence(record) > _precedence(seen):
            merged[record.id] = record
    remote_by_id: dict[str, SessionRecord] = {}
    for record in remote:
        seen = remote_by_id.get(record.id)
        if seen is None or _precedence(record) > _precedence(seen):
            remote_by_id[record.id] = record
    for session_id, record in remote_by_id.items():
        existing = merged.get(session_id)
        merged[session_id] = record if existing is None else pick_winner(existing, record)
    ordered = sorted(merged.values(), key=lambda record: record.id)
    ordered.sort(key=lambda record: record.created_at, reverse=True)
    return [record.snapshot() for record in ordered]

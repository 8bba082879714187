from __future__ import annotations

import copy
import dataclasses
import time
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

STATUS_OVERVIEW = "overview"
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"

STATUS_ORDER = {
    STATUS_OVERVIEW: 0,
    STATUS_ACTIVE: 1,
    STATUS_COMPLETED: 2,
}

# camelCase wire names for the fields the engine itself understands.
_WIRE_NAMES = {
    "id": "id",
    "created_at": "createdAt",
    "status": "status",
    "score": "score",
    "topics": "topics",
    "progress": "progress",
    "completed_at": "completedAt",
}
_FIELD_NAMES = {wire: name for name, wire in _WIRE_NAMES.items()}


def now_ms() -> int:
    return int(time.time() * 1000)


def new_session_id() -> str:
    return f"session_{now_ms()}_{uuid4().hex[:9]}"


def validate_status(status: str) -> str:
    if status not in STATUS_ORDER:
        raise ValueError(f"unknown session status: {status!r}")
    return status


@dataclass(frozen=True)
class SessionRecord:
    """One learning session, synchronized with the remote store as a single blob.

    Only ``id``, ``created_at`` and ``status`` carry meaning for sync. ``score``,
    ``topics`` and ``progress`` are opaque payload, and anything else the client
    attaches (video metadata, difficulty, cursor indices) rides along in ``extra``.
    """

    id: str
    created_at: int
    status: str = STATUS_OVERVIEW
    score: dict[str, Any] = field(default_factory=dict)
    topics: list[dict[str, Any]] = field(default_factory=list)
    progress: dict[str, Any] | None = None
    completed_at: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError("session id is required")
        if isinstance(self.created_at, bool) or not isinstance(self.created_at, int):
            raise ValueError("createdAt must be an integer timestamp")
        validate_status(self.status)
        if not isinstance(self.score, dict):
            raise ValueError("score must be an object")
        if not isinstance(self.topics, list) or not all(
            isinstance(topic, dict) for topic in self.topics
        ):
            raise ValueError("topics must be a list of objects")
        if self.progress is not None and not isinstance(self.progress, dict):
            raise ValueError("progress must be an object")

    def snapshot(self) -> SessionRecord:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = copy.deepcopy(self.extra)
        for name, wire in _WIRE_NAMES.items():
            data[wire] = copy.deepcopy(getattr(self, name))
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        if not isinstance(data, dict):
            raise ValueError("session payload must be an object")
        known: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in data.items():
            name = _FIELD_NAMES.get(key)
            if name is None:
                extra[key] = copy.deepcopy(value)
            elif value is not None or name in {"progress", "completed_at"}:
                known[name] = copy.deepcopy(value)
        if "id" not in known:
            raise ValueError("session id is required")
        if "created_at" not in known:
            raise ValueError("createdAt is required")
        return cls(extra=extra, **known)

    def with_fields(self, fields: dict[str, Any]) -> SessionRecord:
        """Return a copy with ``fields`` merged in (python or wire names accepted)."""
        changes: dict[str, Any] = {}
        extra = copy.deepcopy(self.extra)
        for key, value in fields.items():
            name = key if key in _WIRE_NAMES else _FIELD_NAMES.get(key)
            if name is None:
                extra[key] = copy.deepcopy(value)
                continue
            if name == "id" and value != self.id:
                raise ValueError("session id is immutable")
            changes[name] = copy.deepcopy(value)
        if extra != self.extra:
            changes["extra"] = extra
        if not changes:
            return self.snapshot()
        return dataclasses.replace(self.snapshot(), **changes)


def status_rank(status: str) -> int:
    return STATUS_ORDER[validate_status(status)]

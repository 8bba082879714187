from __future__ import annotations

from ._store import RecordChange, RecordStore
from .queue import DEFAULT_MAX_ATTEMPTS, QueueEntry, SyncQueue

__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "QueueEntry",
    "RecordChange",
    "RecordStore",
    "SyncQueue",
]

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from ..auth import AuthCapability
from ..errors import MigrationError
from ..records import SessionRecord
from ..store import RecordStore
from .gateway import RemoteGateway

logger = logging.getLogger(__name__)

MIGRATION_DISMISSED_KEY = "migration_dismissed"


@dataclass
class MigrationResult:
    migrated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.migrated) + len(self.failed)


def _parse_stored(payload_json: str) -> SessionRecord:
    if not payload_json.strip():
        raise ValueError("session payload is missing")
    try:
        data = json.loads(payload_json)
    except json.JSONDecodeError as exc:
        raise ValueError("session payload is not valid json") from exc
    return SessionRecord.from_dict(data)


class MigrationDriver:
    """Moves a local-only library into the remote store once, after sign-in."""

    def __init__(self, store: RecordStore, gateway: RemoteGateway, auth: AuthCapability) -> None:
        self.store = store
        self.gateway = gateway
        self.auth = auth

    def dismissed(self) -> bool:
        return bool(self.store.get_state(MIGRATION_DISMISSED_KEY, False))

    def dismiss(self) -> None:
        self.store.set_state(MIGRATION_DISMISSED_KEY, True)

    def migrate(self) -> MigrationResult:
        result = MigrationResult()
        if not self.auth.is_authenticated():
            logger.info("skipping session migration: not authenticated")
            return result
        for session_id, payload_json in self.store.stored_payloads():
            try:
                record = _parse_stored(payload_json)
            except ValueError as exc:
                logger.warning("skipping session %s during migration: %s", session_id, exc)
                result.skipped.append(session_id)
                result.failed.append(session_id)
                continue
            try:
                self.gateway.create(record)
            except Exception as exc:
                logger.warning("failed to migrate session %s: %s", record.id, exc)
                result.failed.append(record.id)
                continue
            result.migrated.append(record.id)

        # Local copies are dropped even after a partial failure.
        self.store.clear()
        self.dismiss()

        if result.attempted and not result.migrated:
            raise MigrationError(
                f"failed to migrate any of {result.attempted} sessions", failed=result.failed
            )
        if result.failed:
            logger.warning(
                "migrated %d sessions, %d failed", len(result.migrated), len(result.failed)
            )
        else:
            logger.info("migrated %d sessions", len(result.migrated))
        return result

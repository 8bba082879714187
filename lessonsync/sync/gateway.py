from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote, urlencode

from ..auth import AuthCapability
from ..errors import AuthError, NetworkError
from ..records import SessionRecord
from . import http_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteSessionRecord:
    remote_id: str
    record: SessionRecord


class RemoteGateway(Protocol):
    """Operations the sync engine needs from the remote session store.

    Every method may raise ``NetworkError``, ``AuthError`` or ``ValidationError``.
    """

    def create(self, record: SessionRecord) -> str: ...

    def update(self, remote_id: str, fields: dict[str, Any]) -> None: ...

    def complete(self, remote_id: str) -> None: ...

    def delete(self, remote_id: str) -> None: ...

    def list(self) -> list[RemoteSessionRecord]: ...

    def log_commitment(
        self, session_id: str, minutes_spent: int, questions_answered: int
    ) -> None: ...


def parse_remote_session(item: Any) -> RemoteSessionRecord:
    if not isinstance(item, dict):
        raise ValueError("remote session must be an object")
    payload = item.get("payload")
    if not isinstance(payload, dict):
        raise ValueError("remote session is missing its payload")
    record = SessionRecord.from_dict(payload)
    remote_id = str(item.get("id") or record.id)
    return RemoteSessionRecord(remote_id=remote_id, record=record)


class HttpRemoteGateway:
    def __init__(
        self,
        base_url: str,
        auth: AuthCapability,
        *,
        timeout_s: float = 10.0,
        page_size: int = 50,
    ) -> None:
        self.base_url = http_client.build_base_url(base_url)
        if not self.base_url:
            raise ValueError("api base url is required")
        self.auth = auth
        self.timeout_s = timeout_s
        self.page_size = max(1, int(page_size))

    def _request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        token = self.auth.current_bearer_token()
        if not token:
            raise AuthError(f"{action} failed (not authenticated)")
        return http_client.request_json(
            method,
            f"{self.base_url}{path}",
            action=action,
            token=token,
            body=body,
            timeout_s=self.timeout_s,
        )

    def _session_path(self, remote_id: str) -> str:
        return f"/sessions/{quote(remote_id, safe='')}"

    def create(self, record: SessionRecord) -> str:
        payload = self._request(
            "POST",
            "/sessions",
            action="session create",
            body={
                "clientId": record.id,
                "createdAt": record.created_at,
                "status": record.status,
                "payload": record.to_dict(),
            },
        )
        remote_id = (payload or {}).get("id")
        if not isinstance(remote_id, str) or not remote_id:
            return record.id
        return remote_id

    def update(self, remote_id: str, fields: dict[str, Any]) -> None:
        self._request("PATCH", self._session_path(remote_id), action="session update", body=fields)

    def complete(self, remote_id: str) -> None:
        self._request(
            "POST", f"{self._session_path(remote_id)}/complete", action="session complete"
        )

    def delete(self, remote_id: str) -> None:
        self._request("DELETE", self._session_path(remote_id), action="session delete")

    def list(self) -> list[RemoteSessionRecord]:
        sessions: list[RemoteSessionRecord] = []
        page = 1
        while True:
            query = urlencode({"page": page, "limit": self.page_size})
            payload = self._request("GET", f"/sessions?{query}", action="session list") or {}
            items = payload.get("sessions")
            if not isinstance(items, list):
                raise NetworkError("session list failed (invalid response)")
            for item in items:
                try:
                    sessions.append(parse_remote_session(item))
                except ValueError as exc:
                    logger.warning("skipping malformed remote session: %s", exc)
            pagination = payload.get("pagination")
            pages = pagination.get("pages") if isinstance(pagination, dict) else None
            if not isinstance(pages, int) or page >= pages or not items:
                return sessions
            page += 1

    def log_commitment(self, session_id: str, minutes_spent: int, questions_answered: int) -> None:
        self._request(
            "POST",
            "/commitment/log",
            action="commitment log",
            body={
                "sessionId": session_id,
                "timeSpentMinutes": minutes_spent,
                "questionsAnswered": questions_answered,
                "sessionsCompleted": 1,
            },
        )

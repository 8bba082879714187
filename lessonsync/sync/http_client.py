from __future__ import annotations

import json
from http.client import HTTPConnection, HTTPException, HTTPSConnection
from typing import Any
from urllib.parse import urlparse

from ..errors import AuthError, NetworkError, NotFoundError, SyncError, ValidationError

AUTH_STATUSES = frozenset({401, 403})
VALIDATION_STATUSES = frozenset({400, 409, 413, 422})


def build_base_url(address: str) -> str:
    trimmed = address.strip().rstrip("/")
    if not trimmed:
        return ""
    if urlparse(trimmed).scheme:
        return trimmed
    return f"http://{trimmed}"


def _error_detail(payload: dict[str, Any] | None) -> str | None:
    if not isinstance(payload, dict):
        return None
    message = payload.get("message")
    error = payload.get("error")
    code = payload.get("code")
    detail = message if isinstance(message, str) else error if isinstance(error, str) else None
    if detail and isinstance(code, str):
        return f"{code}: {detail}"
    return detail


def error_for_status(status: int, payload: dict[str, Any] | None, *, action: str) -> SyncError:
    """Map a non-2xx response from the session API onto the sync error taxonomy."""
    detail = _error_detail(payload)
    message = f"{action} failed ({status}: {detail})" if detail else f"{action} failed ({status})"
    if status in AUTH_STATUSES:
        return AuthError(message)
    if status == 404:
        return NotFoundError(message)
    if status in VALIDATION_STATUSES:
        return ValidationError(message)
    return NetworkError(message)


def _decode_body(raw: bytes) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        snippet = raw[:160].decode("utf-8", errors="replace").strip()
        return {"error": f"non-JSON response: {snippet}" if snippet else "non-JSON response"}
    if payload is None or isinstance(payload, dict):
        return payload
    # List endpoints always wrap their items; a bare array is not a session API reply.
    return {"error": f"unexpected {type(payload).__name__} response"}


def request_json(
    method: str,
    url: str,
    *,
    action: str,
    token: str | None = None,
    body: dict[str, Any] | None = None,
    timeout_s: float = 10.0,
) -> dict[str, Any] | None:
    """Send one JSON request and return the decoded 2xx body.

    Transport failures become ``NetworkError``; error statuses are raised via
    ``error_for_status`` with ``action`` as the message prefix.
    """
    parsed = urlparse(url)
    if not parsed.hostname:
        raise ValueError(f"missing hostname in {url!r}")
    connection_cls = HTTPSConnection if parsed.scheme == "https" else HTTPConnection
    default_port = 443 if parsed.scheme == "https" else 80
    conn = connection_cls(parsed.hostname, parsed.port or default_port, timeout=timeout_s)
    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    encoded = None
    if body is not None:
        encoded = json.dumps(body, ensure_ascii=False).encode("utf-8")
        headers["Content-Type"] = "application/json"
    try:
        conn.request(method, path, body=encoded, headers=headers)
        resp = conn.getresponse()
        status = int(resp.status)
        raw = resp.read()
    except (OSError, HTTPException) as exc:
        detail = str(exc).strip() or exc.__class__.__name__
        raise NetworkError(f"{action} failed ({detail})") from exc
    finally:
        conn.close()
    payload = _decode_body(raw)
    if 200 <= status < 300:
        return payload
    raise error_for_status(status, payload, action=action)

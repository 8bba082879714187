from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class AuthCapability(Protocol):
    def is_authenticated(self) -> bool: ...

    def current_bearer_token(self) -> str | None: ...

    def logout(self) -> None: ...


class TokenAuth:
    """Holds an opaque bearer token and tells listeners when it appears or goes away."""

    def __init__(self, token: str | None = None) -> None:
        self._lock = threading.Lock()
        self._token = (token or "").strip() or None
        self._on_login: list[Callable[[], None]] = []
        self._on_logout: list[Callable[[], None]] = []

    def is_authenticated(self) -> bool:
        with self._lock:
            return self._token is not None

    def current_bearer_token(self) -> str | None:
        with self._lock:
            return self._token

    def subscribe(
        self,
        *,
        on_login: Callable[[], None] | None = None,
        on_logout: Callable[[], None] | None = None,
    ) -> None:
        with self._lock:
            if on_login is not None:
                self._on_login.append(on_login)
            if on_logout is not None:
                self._on_logout.append(on_logout)

    def login(self, token: str) -> None:
        token = token.strip()
        if not token:
            raise ValueError("token is required")
        with self._lock:
            self._token = token
            listeners = list(self._on_login)
        for listener in listeners:
            listener()

    def logout(self) -> None:
        with self._lock:
            was_authenticated = self._token is not None
            self._token = None
            listeners = list(self._on_logout)
        if not was_authenticated:
            return
        logger.info("bearer token cleared")
        for listener in listeners:
            listener()

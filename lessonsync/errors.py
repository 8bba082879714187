from __future__ import annotations


class SyncError(Exception):
    """Base class for remote store failures surfaced by a gateway."""

    retryable = False


class NetworkError(SyncError):
    retryable = True


class AuthError(SyncError):
    pass


class ValidationError(SyncError):
    pass


class NotFoundError(SyncError):
    # A retry re-creates the remote record.
    retryable = True


class MigrationError(RuntimeError):
    def __init__(self, message: str, *, failed: list[str] | None = None) -> None:
        super().__init__(message)
        self.failed = list(failed or [])

from __future__ import annotations

from .coordinator import SyncCoordinator
from .gateway import HttpRemoteGateway, RemoteGateway, RemoteSessionRecord
from .migration import MigrationDriver, MigrationResult
from .reconcile import reconcile

__all__ = [
    "HttpRemoteGateway",
    "MigrationDriver",
    "MigrationResult",
    "RemoteGateway",
    "RemoteSessionRecord",
    "SyncCoordinator",
    "reconcile",
]

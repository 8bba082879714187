from __future__ import annotations

from typing import Any

import typer
from rich import print

from lessonsync.config import load_config, read_config_file, write_config_file
from lessonsync.engine import SessionSyncEngine


def engine_from_path(db_path: str | None) -> SessionSyncEngine:
    return SessionSyncEngine.from_config(load_config(), db_path=db_path)


def read_config_or_exit() -> dict[str, Any]:
    try:
        return read_config_file()
    except ValueError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def write_config_or_exit(data: dict[str, Any]) -> None:
    try:
        write_config_file(data)
    except OSError as exc:
        print(f"[red]Failed to write config: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def wait_or_warn(engine: SessionSyncEngine, timeout_s: float) -> None:
    if not engine.wait_idle(timeout_s):
        print(f"[yellow]Background sync still running after {timeout_s:g}s[/yellow]")

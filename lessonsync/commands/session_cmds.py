from __future__ import annotations

import json

import typer
from rich import print


def sessions_list_cmd(*, engine_from_path, db_path: str | None, limit: int) -> None:
    """List local sessions, newest first."""

    engine = engine_from_path(db_path)
    try:
        sessions = engine.list_sessions()
        pending = set(engine.pending_sync_sessions)
        current = engine.current_session()
    finally:
        engine.close()
    if not sessions:
        print("No sessions")
        return
    for record in sessions[:limit]:
        marker = "*" if current is not None and current.id == record.id else " "
        sync_state = "pending" if record.id in pending else "synced"
        print(
            f"{marker} {record.id}|{record.status}|created={record.created_at}"
            f"|topics={len(record.topics)}|{sync_state}"
        )
    if len(sessions) > limit:
        print(f"... (+{len(sessions) - limit} more)")


def sessions_show_cmd(*, engine_from_path, db_path: str | None, session_id: str) -> None:
    """Print one session as JSON."""

    engine = engine_from_path(db_path)
    try:
        record = engine.get_session(session_id)
    finally:
        engine.close()
    if record is None:
        print(f"[red]Session not found: {session_id}[/red]")
        raise typer.Exit(code=1)
    print(json.dumps(record.to_dict(), ensure_ascii=False, indent=2))


def sessions_delete_cmd(
    *, engine_from_path, db_path: str | None, session_id: str, wait_s: float
) -> None:
    """Delete a session locally and, when signed in, remotely."""

    engine = engine_from_path(db_path)
    try:
        deleted = engine.delete_session(session_id)
        engine.wait_idle(wait_s)
    finally:
        engine.close()
    if not deleted:
        print(f"[yellow]Session not found: {session_id}[/yellow]")
        raise typer.Exit(code=1)
    print(f"[green]Deleted {session_id}[/green]")

from __future__ import annotations

import typer
from rich import print

from lessonsync.errors import MigrationError


def sync_now_cmd(*, engine_from_path, wait_or_warn, db_path: str | None, wait_s: float) -> None:
    """Pull the remote library, merge it, then retry pending writes."""

    engine = engine_from_path(db_path)
    try:
        if not engine.auth.is_authenticated():
            print("[yellow]Not signed in; nothing to sync[/yellow]")
            raise typer.Exit(code=1)
        ok = engine.sync_with_cloud()
        wait_or_warn(engine, wait_s)
        pending = engine.get_pending_sync_count()
        count = engine.get_local_session_count()
    finally:
        engine.close()
    if not ok:
        print("[red]Sync failed (see log for details)[/red]")
        raise typer.Exit(code=1)
    print(f"[green]Synced[/green] sessions={count} pending={pending}")


def sync_retry_cmd(*, engine_from_path, wait_or_warn, db_path: str | None, wait_s: float) -> None:
    """Retry queued writes that have not reached the retry ceiling."""

    engine = engine_from_path(db_path)
    try:
        dispatched = engine.retry_pending_syncs()
        wait_or_warn(engine, wait_s)
        pending = engine.get_pending_sync_count()
    finally:
        engine.close()
    print(f"Retried {dispatched} session(s); {pending} still pending")


def sync_status_cmd(*, engine_from_path, load_config, get_config_path, db_path: str | None) -> None:
    """Show sync configuration and queue state."""

    config = load_config()
    engine = engine_from_path(db_path)
    try:
        authenticated = engine.auth.is_authenticated()
        errors = engine.sync_errors
        last_synced = engine.last_synced_at
        local_count = engine.get_local_session_count()
        dismissed = engine.migration_dismissed
    finally:
        engine.close()
    print(f"- Config: {get_config_path()}")
    print(f"- API: {config.api_base_url}")
    print(f"- Signed in: {authenticated}")
    print(f"- Sessions: {local_count}")
    print(f"- Last synced: {last_synced or 'never'}")
    print(f"- Migration dismissed: {dismissed}")
    if not errors:
        print("- Pending: none")
        return
    print(f"- Pending: {len(errors)}")
    for session_id, info in errors.items():
        print(f"  - {session_id}: attempts={info['attempts']} error={info['error'] or '-'}")


def sync_attempts_cmd(*, engine_from_path, db_path: str | None, limit: int) -> None:
    """Show recent remote write attempts."""

    engine = engine_from_path(db_path)
    try:
        rows = engine.queue.recent_attempts(limit)
    finally:
        engine.close()
    for row in rows:
        status = "ok" if row["ok"] else "error"
        error = str(row["error"] or "")
        suffix = f" | {error}" if error else ""
        print(
            f"{row['session_id']}|{row['action']}|{status}|{row['outcome']}"
            f"|attempts={row['attempts']}|{row['finished_at']}{suffix}"
        )


def sync_migrate_cmd(*, engine_from_path, db_path: str | None) -> None:
    """Upload the local-only library to the remote store and clear it locally."""

    engine = engine_from_path(db_path)
    try:
        if not engine.auth.is_authenticated():
            print("[yellow]Not signed in; sign in before migrating[/yellow]")
            raise typer.Exit(code=1)
        try:
            result = engine.migrate_local_sessions()
        except MigrationError as exc:
            print(f"[red]Migration failed: {exc}[/red]")
            raise typer.Exit(code=1) from exc
    finally:
        engine.close()
    print(f"[green]Migrated {len(result.migrated)} session(s)[/green]")
    if result.failed:
        print(f"[yellow]{len(result.failed)} session(s) could not be migrated[/yellow]")

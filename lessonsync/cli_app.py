from __future__ import annotations

import logging

import typer
from rich import print

from . import __version__
from .commands.common import (
    engine_from_path,
    read_config_or_exit,
    wait_or_warn,
    write_config_or_exit,
)
from .commands.session_cmds import sessions_delete_cmd, sessions_list_cmd, sessions_show_cmd
from .commands.sync_cmds import (
    sync_attempts_cmd,
    sync_migrate_cmd,
    sync_now_cmd,
    sync_retry_cmd,
    sync_status_cmd,
)
from .config import get_config_path, load_config

app = typer.Typer(help="lessonsync: local-first sync for learning sessions")
sessions_app = typer.Typer(help="Inspect the local session library")
sync_app = typer.Typer(help="Sync the local library with the remote store")
app.add_typer(sessions_app, name="sessions")
app.add_typer(sync_app, name="sync")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log sync activity to stderr"),
) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def version() -> None:
    """Print the installed version."""

    print(__version__)


@app.command()
def login(token: str = typer.Argument(..., help="Bearer token for the remote store")) -> None:
    """Store a bearer token in the config file."""

    token = token.strip()
    if not token:
        print("[red]Token must not be empty[/red]")
        raise typer.Exit(code=1)
    data = read_config_or_exit()
    data["api_token"] = token
    write_config_or_exit(data)
    print(f"[green]Token saved to {get_config_path()}[/green]")


@app.command()
def logout() -> None:
    """Remove the stored bearer token."""

    data = read_config_or_exit()
    if data.pop("api_token", None) is None:
        print("Not signed in")
        return
    write_config_or_exit(data)
    print("[green]Signed out[/green]")


@sessions_app.command("list")
def sessions_list(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    limit: int = typer.Option(20, help="Number of sessions to show"),
) -> None:
    """List local sessions, newest first."""

    sessions_list_cmd(engine_from_path=engine_from_path, db_path=db_path, limit=limit)


@sessions_app.command("show")
def sessions_show(
    session_id: str = typer.Argument(..., help="Session id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Print one session as JSON."""

    sessions_show_cmd(engine_from_path=engine_from_path, db_path=db_path, session_id=session_id)


@sessions_app.command("delete")
def sessions_delete(
    session_id: str = typer.Argument(..., help="Session id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    wait_s: float = typer.Option(10.0, help="Seconds to wait for the remote delete"),
) -> None:
    """Delete a session locally and remotely."""

    sessions_delete_cmd(
        engine_from_path=engine_from_path, db_path=db_path, session_id=session_id, wait_s=wait_s
    )


@sync_app.command("now")
def sync_now(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    wait_s: float = typer.Option(30.0, help="Seconds to wait for queued writes"),
) -> None:
    """Pull, merge and push pending writes."""

    sync_now_cmd(
        engine_from_path=engine_from_path, wait_or_warn=wait_or_warn, db_path=db_path, wait_s=wait_s
    )


@sync_app.command("retry")
def sync_retry(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    wait_s: float = typer.Option(30.0, help="Seconds to wait for retried writes"),
) -> None:
    """Retry pending writes."""

    sync_retry_cmd(
        engine_from_path=engine_from_path, wait_or_warn=wait_or_warn, db_path=db_path, wait_s=wait_s
    )


@sync_app.command("status")
def sync_status(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show sync configuration and pending writes."""

    sync_status_cmd(
        engine_from_path=engine_from_path,
        load_config=load_config,
        get_config_path=get_config_path,
        db_path=db_path,
    )


@sync_app.command("attempts")
def sync_attempts(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    limit: int = typer.Option(10, help="Number of attempts to show"),
) -> None:
    """Show recent sync attempts."""

    sync_attempts_cmd(engine_from_path=engine_from_path, db_path=db_path, limit=limit)


@sync_app.command("migrate")
def sync_migrate(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Upload the local-only library after signing in."""

    sync_migrate_cmd(engine_from_path=engine_from_path, db_path=db_path)


if __name__ == "__main__":
    app()

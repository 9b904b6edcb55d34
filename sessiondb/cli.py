from __future__ import annotations

import datetime as dt
import json
import logging
import signal
from dataclasses import asdict
from typing import Any, Optional

import typer
from rich import print
from rich.markup import escape

from .config import get_config_path, load_config, read_config_file
from .coordination import HEALTH_RELEASED
from .daemon import CollectorDaemon
from .db import now_ms
from .errors import CoordinationError, SessionDbError
from .ingest.collector import CollectResult
from .ingest.parser import parse_jsonl, parse_timestamp
from .store import SEARCH_ORDERS, SessionStore

app = typer.Typer(help="sessiondb: searchable database of AI CLI session transcripts")
writer_app = typer.Typer(help="Inspect and manage the writer lease")
app.add_typer(writer_app, name="writer")

CLI_WRITER_TYPE = "cli"


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging to stderr"),
) -> None:
    level = logging.DEBUG
    if not verbose:
        level = getattr(logging, load_config().log_level.upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _store(db_path: str | None) -> SessionStore:
    try:
        return SessionStore(db_path)
    except SessionDbError as exc:
        print(f"[red]Cannot open database: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def _read_config_or_exit() -> dict[str, Any]:
    try:
        return read_config_file()
    except ValueError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def _format_ts(value: int | None) -> str:
    if value is None:
        return "-"
    return dt.datetime.fromtimestamp(value / 1000, dt.UTC).strftime("%Y-%m-%d %H:%M:%S")


def _parse_bound(value: str | None, name: str) -> int | None:
    if value is None:
        return None
    parsed = parse_timestamp(value)
    if parsed is None:
        print(f"[red]Invalid {name}: {value!r} (use epoch ms or ISO 8601)[/red]")
        raise typer.Exit(code=1)
    return parsed


def _print_collect_result(result: CollectResult, as_json: bool) -> None:
    if as_json:
        data = result.as_dict()
        data.pop("new_message_ids", None)
        print(json.dumps(data, indent=2))
        return
    print(
        f"Collected [bold]{result.messages_inserted}[/bold] messages from "
        f"{result.sessions_scanned} sessions in {result.projects_scanned} projects"
    )
    if result.files_skipped:
        print(f"- Unchanged files skipped: {result.files_skipped}")
    if result.parse_errors:
        print(f"- Malformed lines skipped: {result.parse_errors}")
    if result.error_count:
        print(f"[yellow]- Files failed: {result.error_count}[/yellow]")
        print(f"[yellow]  first error: {result.first_error}[/yellow]")


@app.command()
def collect(
    path: Optional[str] = typer.Argument(None, help="Transcript file to ingest (default: all sources)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    register: bool = typer.Option(
        True, "--register/--no-register", help="Claim the writer lease for this run"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Ingest new transcript lines into the database."""

    store = _store(db_path)
    try:
        if register:
            store.register_writer(CLI_WRITER_TYPE)
        result = store.collect_by_path(path) if path else store.collect()
    except CoordinationError as exc:
        print(f"[red]Cannot write: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    except SessionDbError as exc:
        print(f"[red]Collection failed: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        store.close()
    _print_collect_result(result, as_json)


@app.command()
def search(
    query: str,
    limit: int = typer.Option(10),
    project_id: Optional[int] = typer.Option(None, help="Only search this project"),
    order: str = typer.Option("score", help=f"One of: {', '.join(SEARCH_ORDERS)}"),
    since: Optional[str] = typer.Option(None, help="Earliest timestamp (epoch ms or ISO 8601)"),
    until: Optional[str] = typer.Option(None, help="Latest timestamp (epoch ms or ISO 8601)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    start_ts = _parse_bound(since, "--since")
    end_ts = _parse_bound(until, "--until")
    store = _store(db_path)
    try:
        results = store.search_fts(
            query,
            limit,
            project_id=project_id,
            order_by=order,
            start_ts=start_ts,
            end_ts=end_ts,
        )
    except SessionDbError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        store.close()
    if not results:
        print("[dim]No matches[/dim]")
        return
    for item in results:
        print(
            f"[{item.message_id}] [cyan]{item.project_name}[/cyan] {item.session_id} "
            f"({item.role}, {_format_ts(item.timestamp)}) score={item.score:.2f}\n{escape(item.snippet)}\n"
        )


@app.command()
def stats(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    store = _store(db_path)
    try:
        totals = store.get_stats()
    finally:
        store.close()
    print("[bold]Session database[/bold]")
    print(f"- Path: {store.db_path}")
    print(f"- Projects: {totals.projects}")
    print(f"- Sessions: {totals.sessions}")
    print(f"- Messages: {totals.messages}")


@app.command()
def projects(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    store = _store(db_path)
    try:
        rows = store.list_projects()
    finally:
        store.close()
    for project in rows:
        print(
            f"[{project.id}] [cyan]{project.name}[/cyan] ({project.source}) {project.path} "
            f"sessions={project.session_count}"
        )


@app.command()
def sessions(
    project_id: int,
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    store = _store(db_path)
    try:
        rows = store.list_sessions(project_id)
    finally:
        store.close()
    for session in rows:
        print(
            f"{session.session_id} messages={session.message_count} "
            f"last={_format_ts(session.last_message_at)}"
        )


@app.command()
def messages(
    session_id: str = typer.Argument(..., help="Session id or a unique prefix of one"),
    limit: Optional[int] = typer.Option(None, help="Max messages to show"),
    offset: int = typer.Option(0, help="Messages to skip"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    store = _store(db_path)
    try:
        resolved = store.resolve_session_id(session_id)
        rows = store.list_messages(resolved, limit=limit, offset=offset) if resolved else []
    finally:
        store.close()
    if resolved is None:
        print(f"[red]No session matches {session_id!r}[/red]")
        raise typer.Exit(code=1)
    if resolved != session_id:
        print(f"[dim]Session {resolved}[/dim]")
    for message in rows:
        header = f"#{message.sequence} [bold]{message.role}[/bold] {_format_ts(message.timestamp)}"
        if message.tool_name:
            header += f" tool={message.tool_name}"
        if message.model:
            header += f" model={message.model}"
        print(header)
        print(escape(message.content))
        print()


@app.command()
def parse(
    path: str,
    as_json: bool = typer.Option(False, "--json", help="Print parsed messages as JSON"),
) -> None:
    """Parse a transcript without touching the database."""

    try:
        description = parse_jsonl(path)
    except SessionDbError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    if as_json:
        payload = {
            "session_id": description.session_id,
            "project_path": description.project_path,
            "project_name": description.project_name,
            "messages": [
                {
                    "uuid": m.uuid,
                    "role": m.role,
                    "content": m.content,
                    "timestamp": m.timestamp,
                    "sequence": m.sequence,
                }
                for m in description.messages
            ],
            "errors": description.stats.errors,
            "first_error": description.stats.first_error,
        }
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    print(f"[bold]{description.session_id}[/bold] project={description.project_name}")
    print(f"- Messages: {len(description.messages)}")
    print(f"- Malformed lines: {description.stats.errors}")
    if description.stats.first_error:
        print(f"  first error: {description.stats.first_error}")


@writer_app.command("status")
def writer_status(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    store = _store(db_path)
    try:
        health = store.check_writer_health()
        holder = store.current_writer()
    finally:
        store.close()
    print(f"[bold]Writer lease:[/bold] {health}")
    if holder is None or health == HEALTH_RELEASED:
        return
    print(f"- Holder: {holder.writer_id} ({holder.writer_type})")
    print(f"- Host/pid: {holder.hostname} / {holder.pid}")
    print(f"- Last heartbeat: {holder.age_ms(now_ms()) / 1000:.1f}s ago")


@writer_app.command("takeover")
def writer_takeover(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Reclaim a timed-out lease and release it so the next writer can register."""

    store = _store(db_path)
    try:
        if not store.try_takeover(CLI_WRITER_TYPE):
            print("[red]Writer lease is alive; takeover refused[/red]")
            raise typer.Exit(code=1)
        store.release_writer()
    finally:
        store.close()
    print("Writer lease reclaimed and released")


@app.command()
def daemon(
    interval_ms: Optional[int] = typer.Option(None, help="Collection interval in milliseconds"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Collect continuously; waits as a reader while another writer is alive."""

    store = _store(db_path)
    runner = CollectorDaemon(store, interval_ms=interval_ms)

    def _handle_signal(signum: int, _frame: object) -> None:
        runner.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    try:
        runner.run()
    except KeyboardInterrupt:
        runner.stop()
    finally:
        store.close()


@app.command("config")
def show_config() -> None:
    """Show the config file location and the effective settings."""

    file_values = _read_config_or_exit()
    effective = asdict(load_config())
    print(f"[bold]Config file:[/bold] {get_config_path()}")
    print(json.dumps({"file": file_values, "effective": effective}, indent=2))

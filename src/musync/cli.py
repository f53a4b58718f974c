"""CLI interface for musync."""

from __future__ import annotations

import asyncio
import json
import typing
from collections import deque
from datetime import UTC, datetime
from pathlib import Path

import typer
from pydantic import BaseModel, SecretStr
from rich.console import Console
from rich.table import Table

from musync.config import AppConfig, ensure_dirs, get_base_dir, load_config, save_config
from musync.logging import MAIN_LOG, SYNC_LOG, setup_logging
from musync.storage import Database, PlaylistNotFound, PlaylistTrack, TrackNotFound
from musync.sync.engine import ReconcileReport, SyncInProgress

app = typer.Typer(
    name="musync",
    help="Keep one playlist mirrored on Spotify and YouTube.",
    add_completion=False,
)
console = Console()

_STATUS_COLORS = {
    "synced": "green",
    "partial": "yellow",
    "warning": "yellow",
    "failed": "red",
    "pending": "dim",
    "running": "blue",
}


def main() -> None:
    """Entry point that wraps ``app()`` with a clean KeyboardInterrupt handler."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("Interrupted.")
        raise SystemExit(130) from None


def _prepare() -> AppConfig:
    ensure_dirs()
    cfg = load_config()
    setup_logging(cfg.server.log_level, cfg.log_dir)
    return cfg


async def _with_db(cfg: AppConfig, fn: typing.Callable[[Database], typing.Awaitable]):
    db = Database(cfg.db_path)
    await db.connect()
    try:
        return await fn(db)
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _status(value: str) -> str:
    color = _STATUS_COLORS.get(value, "white")
    return f"[{color}]{value}[/{color}]"


def _human_time(value: datetime | None) -> str:
    """Render a timestamp relative to now."""
    if value is None:
        return "—"
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    diff = (datetime.now(UTC) - value).total_seconds()
    if diff < 60:
        return f"{int(diff)}s ago"
    if diff < 3600:
        return f"{int(diff / 60)} min ago"
    if diff < 86400:
        return f"{int(diff / 3600)}h {int((diff % 3600) / 60)}m ago"
    return value.strftime("%Y-%m-%d %H:%M")


def _print_report(report: ReconcileReport) -> None:
    table = Table(title=f"Playlist {report.playlist_id}")
    table.add_column("Platform", style="bold")
    table.add_column("Status")
    table.add_column("Added", justify="right")
    table.add_column("Removed", justify="right")
    table.add_column("Imported", justify="right")
    table.add_column("Unavailable", justify="right")

    for name, outcome in report.per_platform.items():
        table.add_row(
            name,
            _status(outcome.status.value),
            str(outcome.added),
            str(outcome.removed),
            str(outcome.imported),
            str(len(outcome.unavailable_tracks)),
        )
    console.print(table)

    for name, outcome in report.per_platform.items():
        if outcome.error:
            console.print(f"[bold]{name}:[/bold] {outcome.error}")
        for track in outcome.unavailable_tracks:
            console.print(f"  [dim]{name}: {track.artist} - {track.title} ({track.reason})[/dim]")
        if outcome.remote_url:
            console.print(f"[bold]{name}:[/bold] {outcome.remote_url}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def sync(
    playlist_id: int = typer.Argument(help="Local playlist ID"),
    platform: list[str] = typer.Option(
        None,
        "--platform",
        "-p",
        help="Platform to sync (repeatable; default: all)",
    ),
) -> None:
    """Reconcile a playlist with the given platforms."""
    from musync.runtime import open_runtime

    cfg = _prepare()

    async def _run() -> ReconcileReport:
        async with open_runtime(cfg) as rt:
            return await rt.engine.reconcile(playlist_id, platform or None)

    try:
        report = asyncio.run(_run())
    except PlaylistNotFound as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2) from exc

    _print_report(report)
    if any(o.status.value == "failed" for o in report.per_platform.values()):
        raise typer.Exit(1)


@app.command()
def serve(
    host: str = typer.Option("", "--host", help="Bind address (default: server.host)"),
    port: int = typer.Option(0, "--port", help="Port (default: server.port)"),
) -> None:
    """Run the HTTP API in the foreground."""
    import uvicorn

    from musync.runtime import open_runtime
    from musync.server.rpc import create_app

    ensure_dirs()
    cfg = load_config()
    setup_logging(cfg.server.log_level, cfg.log_dir, console=True)

    async def _serve() -> None:
        async with open_runtime(cfg) as rt:
            server = uvicorn.Server(
                uvicorn.Config(
                    create_app(rt.engine, rt.db, rt.quotas),
                    host=host or cfg.server.host,
                    port=port or cfg.server.port,
                    log_level=cfg.server.log_level,
                    loop="asyncio",
                )
            )
            await server.serve()

    asyncio.run(_serve())


@app.command()
def runs(
    playlist_id: int = typer.Option(None, "--playlist", help="Only runs of this playlist"),
    limit: int = typer.Option(20, "--lines", "-n", help="Number of runs to show"),
) -> None:
    """Show recent sync runs."""
    cfg = _prepare()
    history = asyncio.run(_with_db(cfg, lambda db: db.list_sync_runs(limit=limit, playlist_id=playlist_id)))
    if not history:
        console.print("[dim]No sync runs yet.[/dim]")
        return

    table = Table()
    table.add_column("ID", justify="right")
    table.add_column("Playlist", justify="right")
    table.add_column("Platform")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Details")
    for run in history:
        details = run.error_message or ""
        if not details and run.stats_json:
            stats = json.loads(run.stats_json)
            details = f"+{stats.get('added', 0)} -{stats.get('removed', 0)}, {stats.get('imported', 0)} imported"
        table.add_row(
            str(run.id),
            str(run.playlist_id),
            run.platform,
            _human_time(run.started_at),
            _status(run.status),
            details,
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Playlists
# ---------------------------------------------------------------------------


playlist_app = typer.Typer(name="playlist", help="Manage local playlists.", add_completion=False)
app.add_typer(playlist_app)


@playlist_app.command(name="create")
def playlist_create(
    name: str = typer.Argument(help="Playlist name"),
    description: str = typer.Option("", "--description", "-d"),
    public: bool = typer.Option(False, "--public/--private"),
) -> None:
    """Create a local playlist."""
    cfg = _prepare()
    playlist = asyncio.run(
        _with_db(cfg, lambda db: db.create_playlist(name=name, description=description, is_public=public))
    )
    console.print(f"[green]Created playlist[/green] {playlist.id}: {playlist.name}")


@playlist_app.command(name="add")
def playlist_add(
    playlist_id: int = typer.Argument(help="Local playlist ID"),
    artist: str = typer.Option(..., "--artist", "-a"),
    title: str = typer.Option(..., "--title", "-t"),
    album: str = typer.Option(None, "--album"),
) -> None:
    """Append a track to a local playlist."""
    cfg = _prepare()

    async def _add(db: Database) -> list[PlaylistTrack]:
        await db.load_playlist(playlist_id)
        return await db.add_tracks(playlist_id, [PlaylistTrack(title=title, artist=artist, album=album)])

    try:
        asyncio.run(_with_db(cfg, _add))
    except PlaylistNotFound as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc
    console.print(f"[green]Added[/green] {artist} - {title}")


@playlist_app.command(name="remove")
def playlist_remove(
    playlist_id: int = typer.Argument(help="Local playlist ID"),
    track_id: int = typer.Argument(help="Track ID (see 'musync playlist show')"),
) -> None:
    """Remove a track from a local playlist."""
    cfg = _prepare()
    try:
        track = asyncio.run(_with_db(cfg, lambda db: db.remove_track(playlist_id, track_id)))
    except (PlaylistNotFound, TrackNotFound) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc
    console.print(f"[green]Removed[/green] {track.artist} - {track.title}")


@playlist_app.command(name="edit")
def playlist_edit(
    playlist_id: int = typer.Argument(help="Local playlist ID"),
    name: str = typer.Option(None, "--name"),
    description: str = typer.Option(None, "--description", "-d"),
    public: bool = typer.Option(None, "--public/--private"),
) -> None:
    """Change the name, description or visibility of a playlist."""
    cfg = _prepare()
    try:
        playlist = asyncio.run(
            _with_db(
                cfg,
                lambda db: db.update_playlist(
                    playlist_id, name=name, description=description, is_public=public
                ),
            )
        )
    except PlaylistNotFound as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc
    console.print(f"[green]Updated playlist[/green] {playlist.id}: {playlist.name}")


@playlist_app.command(name="delete")
def playlist_delete(
    playlist_id: int = typer.Argument(help="Local playlist ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete a local playlist (remote playlists are left alone)."""
    if not yes:
        typer.confirm(f"Delete playlist {playlist_id} and its sync history?", abort=True)
    cfg = _prepare()
    try:
        asyncio.run(_with_db(cfg, lambda db: db.delete_playlist(playlist_id)))
    except PlaylistNotFound as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc
    console.print(f"[green]Deleted playlist[/green] {playlist_id}")


@playlist_app.command(name="connect")
def playlist_connect(
    playlist_id: int = typer.Argument(help="Local playlist ID"),
    platform: str = typer.Argument(help="spotify or youtube"),
    remote_playlist_id: str = typer.Argument(help="ID of the existing remote playlist"),
) -> None:
    """Link a local playlist to an existing remote playlist."""
    from musync.runtime import open_runtime

    cfg = _prepare()

    async def _run():
        async with open_runtime(cfg) as rt:
            return await rt.engine.connect_remote(playlist_id, platform, remote_playlist_id)

    try:
        connection = asyncio.run(_run())
    except (PlaylistNotFound, SyncInProgress) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2) from exc
    console.print(f"[green]Connected[/green] {platform}: {connection.remote_url}")


@playlist_app.command(name="disconnect")
def playlist_disconnect(
    playlist_id: int = typer.Argument(help="Local playlist ID"),
    platform: str = typer.Argument(help="spotify or youtube"),
) -> None:
    """Unlink a platform; the remote playlist itself is not deleted."""
    from musync.runtime import open_runtime

    cfg = _prepare()

    async def _run() -> bool:
        async with open_runtime(cfg) as rt:
            return await rt.engine.disconnect(playlist_id, platform)

    try:
        removed = asyncio.run(_run())
    except (PlaylistNotFound, SyncInProgress) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2) from exc
    if not removed:
        console.print(f"[yellow]Playlist {playlist_id} is not connected to {platform}.[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]Disconnected[/green] {platform}")


@playlist_app.command(name="import")
def playlist_import(
    platform: str = typer.Argument(help="spotify or youtube"),
    remote_playlist_id: str = typer.Argument(help="ID of the remote playlist to import"),
    name: str = typer.Option(..., "--name", help="Name of the new local playlist"),
    public: bool = typer.Option(False, "--public/--private"),
) -> None:
    """Create a local playlist from a remote one."""
    from musync.runtime import open_runtime

    cfg = _prepare()

    async def _run() -> ReconcileReport:
        async with open_runtime(cfg) as rt:
            return await rt.engine.import_remote(platform, remote_playlist_id, name=name, is_public=public)

    try:
        report = asyncio.run(_run())
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2) from exc

    _print_report(report)
    if any(o.status.value == "failed" for o in report.per_platform.values()):
        raise typer.Exit(1)


@playlist_app.command(name="list")
def playlist_list() -> None:
    """List local playlists and their platform connections."""
    cfg = _prepare()
    playlists = asyncio.run(_with_db(cfg, lambda db: db.list_playlists()))
    if not playlists:
        console.print("[dim]No playlists yet.[/dim]")
        return
    for p in playlists:
        console.print(f"[bold]{p.id}[/bold]  {p.name}")
        for name, conn in p.connections.items():
            console.print(
                f"    {name}: {_status(conn.sync_status)}  last sync {_human_time(conn.last_synced_at)}"
            )


@playlist_app.command(name="show")
def playlist_show(playlist_id: int = typer.Argument(help="Local playlist ID")) -> None:
    """Show the tracks of a playlist and their known platform IDs."""
    cfg = _prepare()
    try:
        playlist = asyncio.run(_with_db(cfg, lambda db: db.load_playlist(playlist_id)))
    except PlaylistNotFound as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc

    table = Table(title=playlist.name)
    table.add_column("ID", justify="right")
    table.add_column("Artist")
    table.add_column("Title")
    table.add_column("Spotify")
    table.add_column("YouTube")
    for t in playlist.tracks:
        table.add_row(
            str(t.id),
            t.artist,
            t.title,
            t.platform_ids.get("spotify", "—"),
            t.platform_ids.get("youtube", "—"),
        )
    console.print(table)
    for name, conn in playlist.connections.items():
        line = f"{name}: {_status(conn.sync_status)}"
        if conn.sync_error:
            line += f" ({conn.sync_error})"
        console.print(line)


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------


@app.command()
def logs(
    tail_lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
    sync: bool = typer.Option(False, "--sync", help="Show sync.log (JSON) instead of musync.log"),
) -> None:
    """Show recent log output (--sync for the JSON sync log)."""
    filename = SYNC_LOG if sync else MAIN_LOG
    log_file = get_base_dir() / "logs" / filename
    if not log_file.exists():
        console.print(f"[yellow]Log file not found:[/yellow] {log_file}")
        raise typer.Exit(1)

    with open(log_file, encoding="utf-8") as fh:
        last_lines = deque(fh, maxlen=tail_lines)

    if not last_lines:
        console.print("[dim]Log file is empty.[/dim]")
        return

    for line in last_lines:
        _print_log_line(line)


def _log_line_style(line: str) -> str | None:
    """Return a Rich style string based on the log level found in *line*.

    Matches structlog formats only:
    - ConsoleRenderer: ``[error    ]``
    - JSONRenderer: ``"level": "error"``
    """
    lower = line.lower()
    if "[error" in lower or "[critical" in lower or '"level": "error"' in lower or '"level": "critical"' in lower:
        return "red"
    if "[warning" in lower or '"level": "warning"' in lower:
        return "yellow"
    if "[debug" in lower or '"level": "debug"' in lower:
        return "dim"
    return None


def _print_log_line(line: str) -> None:
    line = line.rstrip("\n")
    if not line:
        return
    console.print(line, style=_log_line_style(line), highlight=False, markup=False)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


config_app = typer.Typer(name="config", help="View and modify configuration.", add_completion=False)
app.add_typer(config_app)


def _show_value(value: object) -> str:
    if isinstance(value, SecretStr):
        return "[bold]***[/bold]" if value.get_secret_value() else "[dim](not set)[/dim]"
    if value == "":
        return "[dim](not set)[/dim]"
    return str(value)


def _show_section(name: str, model: BaseModel) -> None:
    console.print(f"\n[bold cyan]\\[{name}][/bold cyan]")
    nested: list[tuple[str, BaseModel]] = []
    for key in type(model).model_fields:
        value = getattr(model, key)
        if isinstance(value, BaseModel):
            nested.append((f"{name}.{key}", value))
        else:
            console.print(f"  {key} = {_show_value(value)}")
    for sub_name, sub_model in nested:
        _show_section(sub_name, sub_model)


@config_app.command(name="show")
def config_show() -> None:
    """Show current configuration (secrets are masked)."""
    cfg = load_config()
    console.print("\n[bold]Current Configuration[/bold]")
    for name in type(cfg).model_fields:
        _show_section(name, getattr(cfg, name))
    console.print()


@config_app.command(name="set")
def config_set(
    key: str = typer.Argument(help="Dotted key, e.g. sync.propagate_deletions or youtube.quota.daily_budget"),
    value: str = typer.Argument(help="New value"),
) -> None:
    """Set a configuration value (e.g. musync config set sync.inter_call_delay 0.5)."""
    parts = key.split(".")
    if len(parts) < 2:
        console.print("[red]Key must be in section.field format (e.g. sync.match_threshold).[/red]")
        raise typer.Exit(1)

    cfg = load_config()
    *path, field_name = parts
    model: BaseModel = cfg
    for segment in path:
        child = getattr(model, segment, None) if segment in type(model).model_fields else None
        if not isinstance(child, BaseModel):
            console.print(f"[red]Unknown section:[/red] {'.'.join(path)}")
            console.print(f"[dim]Valid sections: {', '.join(type(cfg).model_fields)}[/dim]")
            raise typer.Exit(1)
        model = child

    fields = type(model).model_fields
    if field_name not in fields or isinstance(getattr(model, field_name), BaseModel):
        console.print(f"[red]Unknown field:[/red] {key}")
        console.print(f"[dim]Valid fields: {', '.join(fields)}[/dim]")
        raise typer.Exit(1)

    try:
        coerced = _coerce_value(value, fields[field_name].annotation)
        data = cfg.model_dump(mode="python")
        target = data
        for segment in path:
            target = target[segment]
        target[field_name] = coerced
        cfg = AppConfig.model_validate(data)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Invalid value:[/red] {exc}")
        raise typer.Exit(1) from exc

    save_config(cfg)
    display_val = "***" if isinstance(coerced, SecretStr) else coerced
    console.print(f"[green]Set[/green] {key} = {display_val}")


def _coerce_value(raw: str, field_type: object) -> object:
    """Coerce a string value to the expected field type."""
    if field_type is SecretStr:
        return SecretStr(raw)

    if field_type is bool:
        if raw.lower() in ("true", "1", "yes"):
            return True
        if raw.lower() in ("false", "0", "no"):
            return False
        msg = f"Cannot convert '{raw}' to bool (use true/false)"
        raise ValueError(msg)

    if field_type is int:
        return int(raw)

    if field_type is float:
        return float(raw)

    if typing.get_origin(field_type) is typing.Literal:
        args = typing.get_args(field_type)
        if raw not in args:
            msg = f"'{raw}' is not a valid option (choose from: {', '.join(str(a) for a in args)})"
            raise ValueError(msg)

    return raw


def _config_path() -> Path:
    return get_base_dir() / "config.toml"


@config_app.command(name="path")
def config_path() -> None:
    """Print the location of the config file."""
    console.print(str(_config_path()))

"""Command-line interface for claudedir."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterable

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from .archive import export_archive, restore_archive
from .config import DEFAULT_CONFIG_FILENAME, ConfigError, Settings, load_config, render_default_config
from .filesystem import format_bytes
from .models import DirectoryUsage, RestoreMode
from .storage import storage_report
from .store import ClaudeDirError, ConfinedFileStore, NotConfirmedError, OutOfScopeError

app = typer.Typer(help="Local dashboard backend for a ~/.claude configuration directory")
console = Console()

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def configure_logging(level: str) -> None:
    """Route loguru output to stderr at ``level``."""

    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)


def _load(config: Path | None) -> tuple[Settings, ConfinedFileStore]:
    settings = load_config(config)
    return settings, ConfinedFileStore(settings.root)


def _handle_error(exc: Exception) -> None:
    if isinstance(exc, PermissionError):
        console.print("[red]Permission denied.[/red] Check that the configuration directory is writable.")
        raise typer.Exit(code=1)
    if isinstance(exc, ConfigError):
        message = str(exc)
        console.print(f"[red]{message}[/red]")
        if "does not exist" in message:
            console.print("[yellow]Use 'claudedir init --config <path>' to create a configuration file.[/yellow]")
        raise typer.Exit(code=1)
    if isinstance(exc, (OutOfScopeError, NotConfirmedError)):
        console.print(f"[red]Refused:[/red] {exc}")
        raise typer.Exit(code=1)
    if isinstance(exc, ClaudeDirError):
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    raise exc


def _format_usage(title: str, rows: Iterable[DirectoryUsage]) -> None:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Directory")
    table.add_column("Size", justify="right")
    table.add_column("Files", justify="right")

    for row in rows:
        table.add_row(row.name, format_bytes(row.size_bytes), str(row.item_count))

    console.print(table)


def _format_paths(title: str, paths: Iterable[Path], root: Path) -> None:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Path", overflow="fold")

    for path in paths:
        try:
            table.add_row(path.relative_to(root).as_posix())
        except ValueError:
            table.add_row(str(path))

    console.print(table)


@app.command()
def init(
    config: Path = typer.Option(
        Path(DEFAULT_CONFIG_FILENAME),
        "--config",
        "-c",
        help="Path to write the configuration file",
        dir_okay=False,
        writable=True,
    ),
    root: str = typer.Option("~/.claude", "--root", help="Configuration directory to manage"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing config if present"),
) -> None:
    """Create a starter claudedir configuration file."""

    if config.exists() and not force:
        console.print(f"[red]Configuration '{config}' already exists. Use --force to overwrite.[/red]")
        raise typer.Exit(code=1)

    config.parent.mkdir(parents=True, exist_ok=True)
    config.write_text(render_default_config(root=root))
    console.print(f"[green]Created '{config}'.[/green]")


@app.command()
def serve(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to claudedir.toml"),
    host: str | None = typer.Option(None, "--host", help="Interface to bind"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on"),
) -> None:
    """Run the HTTP API and change stream."""

    import uvicorn

    from .server import create_app

    try:
        settings = load_config(config)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return

    configure_logging(settings.log_level)
    bind_host = host or settings.host
    bind_port = port or settings.port
    console.print(f"[bold]Serving[/bold] {settings.root} on http://{bind_host}:{bind_port}")
    uvicorn.run(create_app(settings), host=bind_host, port=bind_port, log_level=settings.log_level.lower())


@app.command()
def storage(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to claudedir.toml"),
) -> None:
    """Show disk usage per directory under the root."""

    try:
        settings, store = _load(config)
        report = storage_report(store, settings)
        _format_usage("Configuration", report.directories)
        _format_usage("Ephemeral", report.ephemeral_directories)
        console.print(f"Total: [bold]{format_bytes(report.total_bytes)}[/bold]")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def export(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to claudedir.toml"),
    output: Path = typer.Option(Path("."), "--output", "-o", help="Directory to write the archive into"),
) -> None:
    """Write a tar.gz archive of the configuration."""

    try:
        settings, store = _load(config)
        filename, data = export_archive(store, settings)
        output.mkdir(parents=True, exist_ok=True)
        destination = output / filename
        destination.write_bytes(data)
        console.print(f"[green]Wrote '{destination}' ({format_bytes(len(data))}).[/green]")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def restore(
    archive: Path = typer.Argument(..., exists=True, dir_okay=False, help="Archive produced by 'export'"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to claudedir.toml"),
    mode: RestoreMode = typer.Option(RestoreMode.MERGE, "--mode", "-m", help="merge or replace"),
) -> None:
    """Restore the configuration from an archive."""

    try:
        settings, store = _load(config)
        report = restore_archive(store, settings, archive.read_bytes(), archive.name, mode)
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Restored")
        for item in report.restored_items:
            table.add_row(item)
        console.print(table)
        if report.pre_restore_backup is not None:
            console.print(f"[yellow]Previous configuration saved to '{report.pre_restore_backup}'.[/yellow]")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def backups(
    path: str = typer.Argument(..., help="File whose backups to list, relative to the root"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to claudedir.toml"),
    prune: bool = typer.Option(False, "--prune", help="Delete all but the newest --keep backups"),
    keep: int = typer.Option(5, "--keep", min=0, help="Backups to retain when pruning"),
) -> None:
    """List, and optionally prune, the backups of one file."""

    try:
        _settings, store = _load(config)
        if prune:
            removed = store.prune_backups(path, keep=keep, confirmed=True)
            console.print(f"[green]Removed {len(removed)} backup(s).[/green]")
        _format_paths("Backups", store.list_backups(path), store.root)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def doctor(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to claudedir.toml"),
) -> None:
    """Report files left behind by interrupted writes and exit non-zero if any exist."""

    try:
        _settings, store = _load(config)
        orphans = store.find_orphaned_temp_files()
        if orphans:
            _format_paths("Interrupted writes", orphans, store.root)
            console.print("[red]Found temporary files from interrupted writes. Review and remove them.[/red]")
            raise typer.Exit(code=1)
        console.print("[green]No interrupted writes found.[/green]")
    except typer.Exit:
        raise
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


def run() -> None:
    """Entry point used for console_script bindings."""

    app()

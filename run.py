"""Entry-point for the Audio Share application."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

import typer
import uvicorn

from audioshare.bootstrap import BootstrapError, initialize_app
from audioshare.config import AppConfig
from audioshare.logging_utils import build_handlers, configure_logging
from audioshare.services.events import emit_db_event, emit_structured_event
from audioshare.services.indexer import IndexingError, LibraryIndexer
from audioshare.services.locking import LockUnavailableError, create_reindex_lock
from audioshare.services.roots import RootRegistry
from audioshare.services.scheduler import ReindexScheduler, ScheduleError
from audioshare.services.storage import MediaRepository
from audioshare.web import create_app


LOGGER = logging.getLogger("audio_share.cli")


cli = typer.Typer(add_completion=False, help="Audio Share management commands")


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(storage_root: Path, level: str = "INFO") -> None:
    configure_logging(level, handlers=build_handlers(storage_root))


def _cli_event_emitter(event_type: str, message: str, **kwargs) -> None:
    if event_type == "DB_QUERY":
        emit_db_event(message, **kwargs)
    else:
        emit_structured_event(event_type, message, **kwargs)


def _initialize() -> AppConfig:
    try:
        return initialize_app()
    except BootstrapError as error:
        typer.echo(f"Initialization failed: {error}", err=True)
        raise typer.Exit(code=1) from error


def _build_indexer(config: AppConfig) -> Tuple[MediaRepository, RootRegistry, LibraryIndexer]:
    repository = MediaRepository(config, event_emitter=_cli_event_emitter)
    registry = RootRegistry.from_config_string(config.audio_dirs)
    try:
        lock = create_reindex_lock(config)
    except LockUnavailableError as error:
        typer.echo(f"Reindex lock unavailable: {error}", err=True)
        raise typer.Exit(code=1) from error
    return repository, registry, LibraryIndexer(repository, registry, lock)


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
) -> None:
    """Serve the index over HTTP, reindexing on the configured schedule."""

    app_config = _initialize()
    _prepare_logging(app_config.storage_root, app_config.log_level)

    repository, registry, indexer = _build_indexer(app_config)
    app = create_app(repository, config=app_config, registry=registry, indexer=indexer)

    scheduler: Optional[ReindexScheduler] = None
    if app_config.index_schedule:
        try:
            scheduler = ReindexScheduler(indexer.rebuild_index, app_config.index_schedule)
        except ScheduleError as error:
            LOGGER.error("Error setting up reindex schedule: %s", error)
        else:
            scheduler.start()

    server_config = uvicorn.Config(app, host=host, port=port, log_config=None)
    server = uvicorn.Server(server_config)
    app.state.server = server
    try:
        server.run()
    finally:
        if scheduler is not None:
            scheduler.stop()


@cli.command()
def reindex() -> None:
    """Rebuild the index once and exit."""

    app_config = _initialize()
    _prepare_logging(app_config.storage_root, app_config.log_level)

    _, _, indexer = _build_indexer(app_config)
    try:
        result = indexer.rebuild_index()
    except IndexingError as error:
        LOGGER.error("Reindex failed: %s", error)
        typer.echo(f"Reindex failed: {error}", err=True)
        raise typer.Exit(code=1) from error

    if result.skipped:
        typer.echo("Reindex already in progress; nothing to do.")
        return
    typer.echo(
        f"Indexed {result.folders} folders and {result.audio_files} audio files "
        f"in {result.elapsed_seconds:.2f}s."
    )
    if result.folders_removed or result.audio_files_deleted:
        typer.echo(
            f"  Removed {result.folders_removed} folders; "
            f"marked {result.audio_files_deleted} audio files deleted."
        )
    if result.errors:
        typer.echo(f"  {result.errors} entries could not be indexed; see the log for details.")
    for folder in result.new_folders:
        typer.echo(f"  New source: {folder.name} ({folder.original_url}) key={folder.share_key}")


@cli.command()
def roots() -> None:
    """List the configured audio roots and their slugs."""

    app_config = _initialize()
    registry = RootRegistry.from_config_string(app_config.audio_dirs)
    for root in registry:
        marker = "" if root.path.is_dir() else "  (missing)"
        typer.echo(f"{root.slug}\t{root.display_name}\t{root.path}{marker}")


if __name__ == "__main__":
    cli()

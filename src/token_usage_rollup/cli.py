"""CLI entrypoints for token-usage-rollup."""

from __future__ import annotations

import logging
import signal
import threading
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

import typer
from rich.console import Console

from .aggregation.buckets import Granularity, datetime_to_ms
from .aggregation.rollups import RollupEngine
from .aggregation.sessions import SessionReconstructor
from .database import UsageDatabase
from .ingestion.adapters import ToolAdapterRegistry, build_default_registry
from .ingestion.change_tracker import ChangeTracker
from .ingestion.errors import IngestionError
from .ingestion.event_store import EventStore
from .ingestion.schemas import SyncProgress
from .ingestion.service import IngestionService, RebuildCounters
from .paths import get_default_database_path
from .settings import SyncSettings
from .stats.render import render_rollup_statistics
from .stats.repository import StatsRepository, StatsRepositoryError
from .stats.service import StatsService
from .sync.coordinator import PassReport, SyncCoordinator
from .sync.strategy import DEFAULT_STRATEGY, SyncStrategy

LOGGER = logging.getLogger(__name__)

TYPER_APP = typer.Typer(help="Incremental usage-event ingestion and rollups for AI coding tools.")

DATABASE_OPTION_HELP = "DuckDB file path for events, sessions and rollups."


@TYPER_APP.callback()
def main() -> None:
    """Root CLI callback."""


@TYPER_APP.command("sync")
def sync_command(
    database_path: Path | None = typer.Option(
        None,
        "--database-path",
        "-d",
        envvar="TOKEN_USAGE_DB",
        help=DATABASE_OPTION_HELP,
    ),
    opencode_db: Path | None = typer.Option(
        None,
        "--opencode-db",
        envvar="TOKEN_USAGE_OPENCODE_DB",
        help="OpenCode SQLite database path.",
    ),
    claude_code_dir: Path | None = typer.Option(
        None,
        "--claude-code-dir",
        envvar="TOKEN_USAGE_CLAUDE_DIR",
        help="Directory holding Claude Code JSON message files.",
    ),
    cursor_dir: Path | None = typer.Option(
        None,
        "--cursor-dir",
        envvar="TOKEN_USAGE_CURSOR_DIR",
        help="Directory holding Cursor JSON message files.",
    ),
    tool: list[str] = typer.Option(
        [],
        "--tool",
        "-t",
        help="Restrict the pass to these tool ids (repeatable).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable info-level logging."),
    log_level: str | None = typer.Option(None, "--log-level", help="Explicit logging level name."),
) -> None:
    """Run one sync pass over every registered tool and print a summary."""
    _configure_logging(verbose, log_level)
    database_path = _resolve_database_path(database_path)
    registry = _select_tools(build_default_registry(opencode_db, claude_code_dir, cursor_dir), tool)

    database = UsageDatabase(database_path)
    coordinator: SyncCoordinator | None = None
    try:
        coordinator = SyncCoordinator(_build_service(database, SyncSettings()), registry)
        report = coordinator.perform_initial_sync().result()
    finally:
        if coordinator is not None:
            coordinator.close()
        database.close()

    _emit_pass_summary(report)
    _emit_recent_stats(database_path=database_path, console=Console())


@TYPER_APP.command("watch")
def watch_command(
    database_path: Path | None = typer.Option(
        None,
        "--database-path",
        "-d",
        envvar="TOKEN_USAGE_DB",
        help=DATABASE_OPTION_HELP,
    ),
    strategy: str = typer.Option(
        str(DEFAULT_STRATEGY),
        "--strategy",
        "-s",
        envvar="TOKEN_USAGE_SYNC_STRATEGY",
        help="'auto' to watch files, or an interval such as 1m, 5m, 10m, 15m or seconds.",
    ),
    opencode_db: Path | None = typer.Option(
        None,
        "--opencode-db",
        envvar="TOKEN_USAGE_OPENCODE_DB",
        help="OpenCode SQLite database path.",
    ),
    claude_code_dir: Path | None = typer.Option(
        None,
        "--claude-code-dir",
        envvar="TOKEN_USAGE_CLAUDE_DIR",
        help="Directory holding Claude Code JSON message files.",
    ),
    cursor_dir: Path | None = typer.Option(
        None,
        "--cursor-dir",
        envvar="TOKEN_USAGE_CURSOR_DIR",
        help="Directory holding Cursor JSON message files.",
    ),
    debounce_ms: int = typer.Option(5000, "--debounce-ms", help="Debounce window for file change batches."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable info-level logging."),
    log_level: str | None = typer.Option(None, "--log-level", help="Explicit logging level name."),
) -> None:
    """Sync continuously until interrupted."""
    _configure_logging(verbose, log_level)
    database_path = _resolve_database_path(database_path)
    try:
        settings = SyncSettings(strategy=SyncStrategy.parse(strategy), watch_debounce_ms=debounce_ms)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    registry = build_default_registry(
        opencode_db,
        claude_code_dir,
        cursor_dir,
        database_batch_size=settings.source_batch_size,
    )

    stop_requested = threading.Event()
    database = UsageDatabase(database_path)
    coordinator = SyncCoordinator(_build_service(database, settings), registry, settings=settings)
    _ = coordinator.on_data_changed(lambda: typer.echo("data_changed=1"))
    previous_handler = signal.signal(signal.SIGTERM, lambda _signum, _frame: stop_requested.set())
    try:
        initial = coordinator.start()
        _emit_pass_summary(initial.result())
        typer.echo(f"watching strategy={settings.strategy} state={coordinator.state.value}")
        while not stop_requested.wait(1.0):
            pass
    except KeyboardInterrupt:
        LOGGER.info("Interrupted; stopping coordinator.")
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
        coordinator.close()
        database.close()


@TYPER_APP.command("ingest")
def ingest_command(
    paths: list[Path] = typer.Argument(..., help="JSON message files to ingest."),
    tool: str = typer.Option("claude_code", "--tool", "-t", help="Tool id the files belong to."),
    database_path: Path | None = typer.Option(
        None,
        "--database-path",
        "-d",
        envvar="TOKEN_USAGE_DB",
        help=DATABASE_OPTION_HELP,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable info-level logging."),
    log_level: str | None = typer.Option(None, "--log-level", help="Explicit logging level name."),
) -> None:
    """Ingest an explicit list of source files for one tool."""
    _configure_logging(verbose, log_level)
    database_path = _resolve_database_path(database_path)
    registry = build_default_registry()
    try:
        adapter = registry.get(tool)
    except IngestionError as exc:
        raise typer.BadParameter(str(exc)) from exc

    database = UsageDatabase(database_path)
    try:
        progress = _build_service(database, SyncSettings()).sync_files(adapter, paths)
    finally:
        database.close()

    _emit_progress(progress)
    if progress.failed_sources:
        raise typer.Exit(code=1)


@TYPER_APP.command("rebuild")
def rebuild_command(
    database_path: Path | None = typer.Option(
        None,
        "--database-path",
        "-d",
        envvar="TOKEN_USAGE_DB",
        help=DATABASE_OPTION_HELP,
    ),
    batch_size: int = typer.Option(5000, "--batch-size", help="Events per rollup scan page."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable info-level logging."),
    log_level: str | None = typer.Option(None, "--log-level", help="Explicit logging level name."),
) -> None:
    """Recompute every session and rollup row from the stored events."""
    _configure_logging(verbose, log_level)
    database_path = _resolve_database_path(database_path)
    if not database_path.exists():
        raise typer.BadParameter(f"Database file not found: {database_path}")
    try:
        settings = SyncSettings(rollup_batch_size=batch_size)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    database = UsageDatabase(database_path)
    try:
        counters = _build_service(database, settings).rebuild()
    finally:
        database.close()

    _emit_rebuild_summary(counters)


@TYPER_APP.command("stats")
def stats_command(
    database_path: Path | None = typer.Option(
        None,
        "--database-path",
        "-d",
        envvar="TOKEN_USAGE_DB",
        help=DATABASE_OPTION_HELP,
    ),
    granularity: Granularity = typer.Option(
        Granularity.DAILY,
        "--granularity",
        "-g",
        case_sensitive=False,
        help="Rollup table to report on.",
    ),
    since: str | None = typer.Option(
        None,
        "--since",
        help="Include only buckets starting on/after this UTC date (YYYY-MM-DD).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable info-level logging."),
) -> None:
    """Print token usage and costs from a rollup table."""
    _configure_logging(verbose, None)
    database_path = _resolve_database_path(database_path)
    if not database_path.exists():
        raise typer.BadParameter(f"Database file not found: {database_path}")

    since_date = _parse_since_date(since)
    since_ms = _date_to_ms(since_date) if since_date is not None else None
    render_rollup_statistics(_collect_report(database_path, granularity, since_ms), Console())


def _configure_logging(verbose: bool, log_level: str | None) -> None:
    level = logging.INFO if verbose else logging.WARNING
    if log_level is not None:
        resolved = logging.getLevelName(log_level.upper())
        if not isinstance(resolved, int):
            raise typer.BadParameter(f"Invalid --log-level value: {log_level}.")
        level = resolved
    logging.basicConfig(
        level=level,
        format="[%(asctime)s][%(levelname)s][%(name)s] %(message)s",
    )


def _resolve_database_path(database_path: Path | None) -> Path:
    resolved = database_path if database_path is not None else get_default_database_path()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved


def _select_tools(registry: ToolAdapterRegistry, tool_ids: list[str]) -> ToolAdapterRegistry:
    if not tool_ids:
        return registry
    try:
        return ToolAdapterRegistry([registry.get(tool_id) for tool_id in tool_ids])
    except IngestionError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _build_service(database: UsageDatabase, settings: SyncSettings) -> IngestionService:
    return IngestionService(
        database,
        change_tracker=ChangeTracker(
            database,
            stable_read_attempts=settings.stable_read_attempts,
            stable_read_delay_seconds=settings.stable_read_delay_seconds,
        ),
        event_store=EventStore(database),
        sessions=SessionReconstructor(database, batch_size=settings.session_batch_size),
        rollups=RollupEngine(database, batch_size=settings.rollup_batch_size),
    )


def _emit_pass_summary(report: PassReport) -> None:
    typer.echo("\nSummary:")
    for progress in report.progress:
        _emit_progress(progress)
    for error in report.adapter_errors:
        typer.echo(f"adapter_error[{error.source_key}]={error.message}")
    typer.echo(f"events_inserted={report.events_inserted}")


def _emit_progress(progress: SyncProgress) -> None:
    prefix = progress.tool_id
    typer.echo(f"{prefix}.total_sources={progress.total_sources}")
    typer.echo(f"{prefix}.imported_sources={progress.imported_sources}")
    typer.echo(f"{prefix}.skipped_sources={progress.skipped_sources}")
    typer.echo(f"{prefix}.failed_sources={progress.failed_sources}")
    typer.echo(f"{prefix}.events_inserted={progress.events_inserted}")
    typer.echo(f"{prefix}.sessions_affected={progress.sessions_affected}")
    for error in progress.errors:
        typer.echo(f"{prefix}.error[{error.kind}]={error.source_key}: {error.message}")


def _emit_rebuild_summary(counters: RebuildCounters) -> None:
    typer.echo("\nSummary:")
    typer.echo(f"sessions_rebuilt={counters.sessions_rebuilt}")
    typer.echo(f"events_scanned={counters.rollups.events_scanned}")
    typer.echo(f"pages_scanned={counters.rollups.pages_scanned}")
    for granularity in Granularity:
        typer.echo(f"{granularity.value}_rows={counters.rollups.rows_written.get(granularity, 0)}")


def _emit_recent_stats(database_path: Path, console: Console) -> None:
    """Render daily rollups over the last seven days."""
    since_date = datetime.now(tz=UTC).date() - timedelta(days=6)
    report = _collect_report(database_path, Granularity.DAILY, _date_to_ms(since_date))
    typer.echo("\nStatistics (last 7 days):")
    render_rollup_statistics(report, console)


def _collect_report(database_path: Path, granularity: Granularity, since_ms: int | None):
    """Collect a rollup report with optional bucket filtering."""
    repository: StatsRepository | None = None
    try:
        repository = StatsRepository(database_path)
        return StatsService(repository=repository, granularity=granularity, since_ms=since_ms).collect()
    except StatsRepositoryError as exc:
        raise typer.BadParameter(str(exc)) from exc
    finally:
        if repository is not None:
            repository.close()


def _parse_since_date(since: str | None) -> date | None:
    """Parse `--since` value into a date."""
    if since is None:
        return None
    try:
        return date.fromisoformat(since)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid --since value: {since}. Expected YYYY-MM-DD.") from exc


def _date_to_ms(value: date) -> int:
    return datetime_to_ms(datetime(value.year, value.month, value.day, tzinfo=UTC))


def module_cli_entry_point() -> None:
    TYPER_APP()

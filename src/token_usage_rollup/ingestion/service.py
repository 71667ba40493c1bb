"""Service orchestration for per-source incremental ingestion."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

import duckdb

from ..aggregation.rollups import RollupEngine
from ..aggregation.schemas import RollupCounters
from ..aggregation.sessions import SessionReconstructor
from ..database import UsageDatabase
from .adapters import ToolAdapter
from .change_tracker import ChangeTracker
from .errors import AdapterError, ParseError, SourceUnreadableError, StorageError
from .event_store import EventStore, UpsertResult
from .schemas import (
    OutcomeStatus,
    ParseResult,
    SourceClassification,
    SourceError,
    SourceOutcome,
    SourceStatus,
    SyncProgress,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_EXCLUDED_DIRECTORIES: frozenset[str] = frozenset(
    {"node_modules", ".git", ".vscode", ".idea", "build", "dist"}
)

SOURCE_UNREADABLE = "source_unreadable"
PARSE_FAILURE = "parse_failure"
STORAGE_FAILURE = "storage_failure"


@dataclass(frozen=True)
class RebuildCounters:
    """Counters emitted by a full session and rollup rebuild."""

    sessions_rebuilt: int
    rollups: RollupCounters


class IngestionService:
    """Runs classify, parse, upsert, session and rollup recompute, record per source."""

    def __init__(
        self,
        database: UsageDatabase,
        change_tracker: ChangeTracker | None = None,
        event_store: EventStore | None = None,
        sessions: SessionReconstructor | None = None,
        rollups: RollupEngine | None = None,
        excluded_directories: Iterable[str] = DEFAULT_EXCLUDED_DIRECTORIES,
    ) -> None:
        self._database = database
        self._change_tracker = change_tracker or ChangeTracker(database)
        self._event_store = event_store or EventStore(database)
        self._sessions = sessions or SessionReconstructor(database)
        self._rollups = rollups or RollupEngine(database)
        self._excluded_directories = frozenset(excluded_directories)
        self._database.ensure_schema()

    @property
    def change_tracker(self) -> ChangeTracker:
        return self._change_tracker

    def sync_source(self, adapter: ToolAdapter, path: Path) -> SourceOutcome:
        """Ingest one source as a single unit of work."""
        source_key = source_key_for(path)
        classification = self._change_tracker.classify(source_key, path, adapter.fingerprint)
        if classification.status is SourceStatus.UNREADABLE:
            return _failed(source_key, SOURCE_UNREADABLE, classification.error or "unreadable source")
        if classification.status is SourceStatus.UNCHANGED:
            LOGGER.debug("Skipping unchanged source: %s", source_key)
            return SourceOutcome(source_key=source_key, status=OutcomeStatus.SKIPPED)

        watermark = None
        if adapter.is_database and classification.previous is not None:
            watermark = classification.previous.watermark

        try:
            result = adapter.parser.parse(path, watermark)
        except SourceUnreadableError as exc:
            LOGGER.error("Failed to read %s: %s", source_key, exc)
            return _failed(source_key, SOURCE_UNREADABLE, str(exc))
        except ParseError as exc:
            LOGGER.error("Failed to parse %s: %s", source_key, exc)
            return _failed(source_key, PARSE_FAILURE, str(exc))

        try:
            written = self._commit(adapter, source_key, classification, result)
        except StorageError as exc:
            LOGGER.error("Failed to store %s: %s", source_key, exc)
            return _failed(source_key, STORAGE_FAILURE, str(exc))

        LOGGER.info(
            "Imported %s: %d events parsed, %d sessions affected.",
            source_key,
            len(result.events),
            len(written.affected_session_ids),
        )
        return SourceOutcome(
            source_key=source_key,
            status=OutcomeStatus.IMPORTED,
            events_parsed=len(result.events),
            events_inserted=written.inserted,
            affected_session_ids=written.affected_session_ids,
        )

    def sync_directory(self, adapter: ToolAdapter, directory: Path | None = None) -> SyncProgress:
        """Sync every eligible source of one adapter and report aggregate progress."""
        root = directory if directory is not None else adapter.resolve_directory()
        progress = SyncProgress(tool_id=adapter.tool_id)

        if adapter.is_database:
            database_path = root if root.is_file() else root / str(adapter.database_filename)
            if not database_path.exists():
                raise AdapterError(f"Source database not found for {adapter.tool_id}: {database_path}")
            progress.record(self.sync_source(adapter, database_path))
            return progress

        if not root.is_dir():
            raise AdapterError(f"Source directory not found for {adapter.tool_id}: {root}")

        present_keys: list[str] = []
        for path in self._iter_candidate_files(root):
            if not adapter.accepts(path):
                progress.record(SourceOutcome(source_key=str(path), status=OutcomeStatus.SKIPPED))
                continue
            present_keys.append(source_key_for(path))
            progress.record(self.sync_source(adapter, path))

        progress.sources_marked_missing = self._change_tracker.mark_missing(adapter.tool_id, present_keys)
        _log_progress(progress)
        return progress

    def sync_files(self, adapter: ToolAdapter, paths: Iterable[Path]) -> SyncProgress:
        """Sync an explicit list of source files for one adapter."""
        progress = SyncProgress(tool_id=adapter.tool_id)
        for path in paths:
            if not path.exists():
                LOGGER.warning("Source does not exist: %s", path)
                progress.record(_failed(str(path), SOURCE_UNREADABLE, f"Source does not exist: {path}"))
            elif not adapter.accepts(path):
                progress.record(SourceOutcome(source_key=str(path), status=OutcomeStatus.SKIPPED))
            else:
                progress.record(self.sync_source(adapter, path))
        _log_progress(progress)
        return progress

    def rebuild(self) -> RebuildCounters:
        """Recompute every session and rollup row from the event table."""
        with self._database.transaction():
            sessions_rebuilt = self._sessions.rebuild_all()
            rollups = self._rollups.rebuild_all()
        return RebuildCounters(sessions_rebuilt=sessions_rebuilt, rollups=rollups)

    def delete_session(self, session_id: str) -> int:
        """Delete one session with its events and recompute the rollups it fed."""
        with self._database.transaction():
            affected = self._rollups.affected_buckets([session_id])
            deleted = self._sessions.delete_session(session_id)
            _ = self._rollups.recalculate_buckets(affected)
        return deleted

    def _commit(
        self,
        adapter: ToolAdapter,
        source_key: str,
        classification: SourceClassification,
        result: ParseResult,
    ) -> UpsertResult:
        assert classification.fingerprint is not None
        event_count, first_event_ms, last_event_ms = _source_span(adapter, classification, result)
        try:
            with self._database.transaction():
                written = self._event_store.write(result.events)
                if written.affected_session_ids:
                    _ = self._sessions.recalculate(written.affected_session_ids)
                    _ = self._rollups.recalculate_affected(written.affected_session_ids)
                self._change_tracker.record(
                    source_key=source_key,
                    tool_id=adapter.tool_id,
                    content_hash=classification.fingerprint,
                    event_count=event_count,
                    first_event_ms=first_event_ms,
                    last_event_ms=last_event_ms,
                    watermark=result.watermark,
                )
        except duckdb.Error as exc:
            raise StorageError(f"Database write failed for {source_key}: {exc}") from exc
        return written

    def _iter_candidate_files(self, root: Path) -> Iterator[Path]:
        for current, directories, files in os.walk(root):
            directories[:] = sorted(
                name for name in directories if not name.startswith(".") and name not in self._excluded_directories
            )
            for name in sorted(files):
                if name.startswith("."):
                    continue
                yield Path(current) / name


def source_key_for(path: Path) -> str:
    """Return the stable metadata key of a source path."""
    return str(path.expanduser().resolve())


def _source_span(
    adapter: ToolAdapter,
    classification: SourceClassification,
    result: ParseResult,
) -> tuple[int, int | None, int | None]:
    created = [event.created_at_ms for event in result.events]
    event_count = len(created)
    first_event_ms = min(created) if created else None
    last_event_ms = max(created) if created else None

    previous = classification.previous
    if adapter.is_database and previous is not None:
        event_count += previous.event_count
        first_event_ms = _min_optional(previous.first_event_ms, first_event_ms)
        last_event_ms = _max_optional(previous.last_event_ms, last_event_ms)
    return event_count, first_event_ms, last_event_ms


def _min_optional(left: int | None, right: int | None) -> int | None:
    values = [value for value in (left, right) if value is not None]
    return min(values) if values else None


def _max_optional(left: int | None, right: int | None) -> int | None:
    values = [value for value in (left, right) if value is not None]
    return max(values) if values else None


def _failed(source_key: str, kind: str, message: str) -> SourceOutcome:
    return SourceOutcome(
        source_key=source_key,
        status=OutcomeStatus.FAILED,
        error=SourceError(source_key=source_key, kind=kind, message=message),
    )


def _log_progress(progress: SyncProgress) -> None:
    LOGGER.info(
        "Synced %s: total=%d imported=%d skipped=%d failed=%d events_inserted=%d",
        progress.tool_id,
        progress.total_sources,
        progress.imported_sources,
        progress.skipped_sources,
        progress.failed_sources,
        progress.events_inserted,
    )

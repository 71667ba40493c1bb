"""Tests for per-source ingestion orchestration."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import duckdb
import orjson
import pytest

from token_usage_rollup.database import UsageDatabase
from token_usage_rollup.ingestion.adapters import json_directory_adapter, opencode_adapter
from token_usage_rollup.ingestion.errors import AdapterError
from token_usage_rollup.ingestion.event_store import EventStore, UpsertResult
from token_usage_rollup.ingestion.schemas import OutcomeStatus, UsageEvent
from token_usage_rollup.ingestion.service import (
    PARSE_FAILURE,
    SOURCE_UNREADABLE,
    STORAGE_FAILURE,
    IngestionService,
    source_key_for,
)

BASE_MS = 1_770_000_000_000


def test_sync_directory_imports_then_skips_unchanged_sources(tmp_path: Path) -> None:
    """A second pass over unchanged files should skip them and insert nothing."""
    source_dir = tmp_path / "messages"
    _write_message(source_dir / "m1.json", "m1", "s1", BASE_MS, input_tokens=50)
    _write_message(source_dir / "nested" / "m2.json", "m2", "s1", BASE_MS + 60_000, input_tokens=100)
    database = _open_database(tmp_path)
    try:
        service = IngestionService(database)
        adapter = json_directory_adapter("cursor", "Cursor", source_dir)
        first = service.sync_directory(adapter)
        second = service.sync_directory(adapter)
        daily_input = database.execute("SELECT SUM(input_tokens) FROM daily_stats").fetchone()[0]
        session_count = database.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
    finally:
        database.close()

    assert (first.total_sources, first.imported_sources, first.events_inserted) == (2, 2, 2)
    assert first.sessions_affected == 2
    assert (second.imported_sources, second.skipped_sources, second.events_inserted) == (0, 2, 0)
    assert daily_input == 150
    assert session_count == 1


def test_sync_directory_prunes_excluded_and_hidden_entries(tmp_path: Path) -> None:
    """Excluded and hidden directories are not walked; wrong-type files count as skipped."""
    source_dir = tmp_path / "messages"
    _write_message(source_dir / "keep.json", "m1", "s1", BASE_MS)
    _write_message(source_dir / "node_modules" / "dep.json", "m2", "s1", BASE_MS)
    _write_message(source_dir / ".cache" / "hidden.json", "m3", "s1", BASE_MS)
    _write_message(source_dir / ".hidden.json", "m4", "s1", BASE_MS)
    _ = (source_dir / "notes.txt").write_text("not a message", encoding="utf-8")
    database = _open_database(tmp_path)
    try:
        progress = IngestionService(database).sync_directory(json_directory_adapter("cursor", "Cursor", source_dir))
        stored = EventStore(database).count()
    finally:
        database.close()

    assert progress.total_sources == 2
    assert progress.imported_sources == 1
    assert progress.skipped_sources == 1
    assert progress.skipped_paths == [str(source_dir / "notes.txt")]
    assert stored == 1


def test_parse_failure_does_not_record_metadata(tmp_path: Path) -> None:
    """A malformed file should fail alone and stay eligible for the next pass."""
    source_dir = tmp_path / "messages"
    _write_message(source_dir / "good.json", "m1", "s1", BASE_MS)
    _ = source_dir.joinpath("bad.json").write_bytes(b"{broken")
    database = _open_database(tmp_path)
    try:
        service = IngestionService(database)
        adapter = json_directory_adapter("cursor", "Cursor", source_dir)
        progress = service.sync_directory(adapter)
        bad_metadata = service.change_tracker.get(source_key_for(source_dir / "bad.json"))
        retry = service.sync_directory(adapter)
    finally:
        database.close()

    assert progress.imported_sources == 1
    assert progress.failed_sources == 1
    assert [error.kind for error in progress.errors] == [PARSE_FAILURE]
    assert bad_metadata is None
    assert retry.failed_sources == 1
    assert retry.skipped_sources == 1


def test_out_of_range_timestamp_fails_only_its_source(tmp_path: Path) -> None:
    """A creation time past the calendar limit should be a parse failure for that file alone."""
    source_dir = tmp_path / "messages"
    _write_message(source_dir / "a_bad.json", "m0", "s0", 253_402_300_800_000)
    _write_message(source_dir / "b_good.json", "m1", "s1", BASE_MS)
    database = _open_database(tmp_path)
    try:
        progress = IngestionService(database).sync_directory(json_directory_adapter("cursor", "Cursor", source_dir))
        stored = EventStore(database).count()
    finally:
        database.close()

    assert progress.failed_sources == 1
    assert [(error.source_key, error.kind) for error in progress.errors] == [
        (source_key_for(source_dir / "a_bad.json"), PARSE_FAILURE)
    ]
    assert progress.imported_sources == 1
    assert stored == 1


def test_modified_file_inserts_only_new_events(tmp_path: Path) -> None:
    """Rewriting a file with an extra message should insert just that message."""
    source_dir = tmp_path / "messages"
    source = source_dir / "session.json"
    _write_messages(source, [_message("m1", "s1", BASE_MS)])
    database = _open_database(tmp_path)
    try:
        service = IngestionService(database)
        adapter = json_directory_adapter("cursor", "Cursor", source_dir)
        _ = service.sync_directory(adapter)
        _write_messages(source, [_message("m1", "s1", BASE_MS), _message("m2", "s1", BASE_MS + 1_000)])
        progress = service.sync_directory(adapter)
        metadata = service.change_tracker.get(source_key_for(source))
    finally:
        database.close()

    assert progress.imported_sources == 1
    assert progress.events_inserted == 1
    assert metadata is not None
    assert metadata.event_count == 2
    assert (metadata.first_event_ms, metadata.last_event_ms) == (BASE_MS, BASE_MS + 1_000)


def test_removed_files_are_marked_missing_and_events_are_kept(tmp_path: Path) -> None:
    """Deleting a source should flag its metadata but keep its events."""
    source_dir = tmp_path / "messages"
    _write_message(source_dir / "m1.json", "m1", "s1", BASE_MS)
    _write_message(source_dir / "m2.json", "m2", "s2", BASE_MS)
    database = _open_database(tmp_path)
    try:
        service = IngestionService(database)
        adapter = json_directory_adapter("cursor", "Cursor", source_dir)
        _ = service.sync_directory(adapter)
        (source_dir / "m2.json").unlink()
        progress = service.sync_directory(adapter)
        metadata = service.change_tracker.get(source_key_for(source_dir / "m2.json"))
        stored = EventStore(database).count()
    finally:
        database.close()

    assert progress.sources_marked_missing == 1
    assert metadata is not None
    assert metadata.source_exists is False
    assert stored == 2


def test_missing_source_directory_raises_adapter_error(tmp_path: Path) -> None:
    """An adapter whose directory does not exist should fail the whole adapter."""
    database = _open_database(tmp_path)
    try:
        service = IngestionService(database)
        with pytest.raises(AdapterError):
            _ = service.sync_directory(json_directory_adapter("cursor", "Cursor", tmp_path / "absent"))
        with pytest.raises(AdapterError):
            _ = service.sync_directory(opencode_adapter(tmp_path / "absent" / "opencode.db"))
    finally:
        database.close()


def test_database_source_resumes_from_watermark(tmp_path: Path) -> None:
    """Only rows newer than the stored watermark should be parsed on later passes."""
    source_db = tmp_path / "opencode" / "opencode.db"
    _build_source_db(source_db, [_row("m1", "s1", 1_000), _row("m2", "s1", 2_000)])
    database = _open_database(tmp_path)
    try:
        service = IngestionService(database)
        adapter = opencode_adapter(source_db, batch_size=1)
        first = service.sync_directory(adapter)
        unchanged = service.sync_directory(adapter)
        _insert_rows(source_db, [_row("m3", "s2", 3_000)])
        second = service.sync_directory(adapter)
        metadata = service.change_tracker.get(source_key_for(source_db))
    finally:
        database.close()

    assert first.events_inserted == 2
    assert unchanged.skipped_sources == 1
    assert second.events_inserted == 1
    assert second.imported_paths == [source_key_for(source_db)]
    assert metadata is not None
    assert metadata.watermark == f"{BASE_MS + 3_000}|m3"
    assert metadata.event_count == 3
    assert (metadata.first_event_ms, metadata.last_event_ms) == (BASE_MS + 900, BASE_MS + 2_900)


def test_storage_failure_rolls_back_and_reports(tmp_path: Path) -> None:
    """A failing write should leave no metadata and report a storage failure."""

    class FailingEventStore(EventStore):
        def write(self, events: Iterable[UsageEvent]) -> UpsertResult:
            raise duckdb.Error("disk full")

    source_dir = tmp_path / "messages"
    _write_message(source_dir / "m1.json", "m1", "s1", BASE_MS)
    database = _open_database(tmp_path)
    try:
        service = IngestionService(database, event_store=FailingEventStore(database))
        outcome = service.sync_source(json_directory_adapter("cursor", "Cursor", source_dir), source_dir / "m1.json")
        metadata = service.change_tracker.list_sources()
    finally:
        database.close()

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.error is not None
    assert outcome.error.kind == STORAGE_FAILURE
    assert "disk full" in outcome.error.message
    assert metadata == []


def test_sync_files_reports_missing_and_wrong_type_paths(tmp_path: Path) -> None:
    """Explicit file lists should import valid sources and report the others."""
    _write_message(tmp_path / "m1.json", "m1", "s1", BASE_MS)
    _ = (tmp_path / "notes.md").write_text("# notes", encoding="utf-8")
    database = _open_database(tmp_path)
    try:
        progress = IngestionService(database).sync_files(
            json_directory_adapter("cursor", "Cursor", tmp_path),
            [tmp_path / "m1.json", tmp_path / "notes.md", tmp_path / "gone.json"],
        )
    finally:
        database.close()

    assert (progress.imported_sources, progress.skipped_sources, progress.failed_sources) == (1, 1, 1)
    assert [error.kind for error in progress.errors] == [SOURCE_UNREADABLE]


def test_delete_session_recomputes_rollups(tmp_path: Path) -> None:
    """Deleting a session should remove its events and its rollup contribution."""
    source_dir = tmp_path / "messages"
    _write_message(source_dir / "m1.json", "m1", "s1", BASE_MS, input_tokens=10)
    _write_message(source_dir / "m2.json", "m2", "s2", BASE_MS, input_tokens=20)
    database = _open_database(tmp_path)
    try:
        service = IngestionService(database)
        _ = service.sync_directory(json_directory_adapter("cursor", "Cursor", source_dir))
        deleted = service.delete_session("s1")
        totals = [
            database.execute(f"SELECT SUM(input_tokens), SUM(session_count) FROM {table}").fetchone()
            for table in ("hourly_stats", "daily_stats", "monthly_stats")
        ]
        sessions = database.execute("SELECT session_id FROM sessions").fetchall()
    finally:
        database.close()

    assert deleted == 1
    assert totals == [(20, 1), (20, 1), (20, 1)]
    assert sessions == [("s2",)]


def test_rebuild_recomputes_sessions_and_rollups(tmp_path: Path) -> None:
    """A rebuild should restore derived tables after they are cleared."""
    source_dir = tmp_path / "messages"
    _write_message(source_dir / "m1.json", "m1", "s1", BASE_MS, input_tokens=10)
    database = _open_database(tmp_path)
    try:
        service = IngestionService(database)
        _ = service.sync_directory(json_directory_adapter("cursor", "Cursor", source_dir))
        for table in ("sessions", "hourly_stats", "daily_stats", "monthly_stats"):
            _ = database.execute(f"DELETE FROM {table}")
        counters = service.rebuild()
        monthly_input = database.execute("SELECT SUM(input_tokens) FROM monthly_stats").fetchone()[0]
    finally:
        database.close()

    assert counters.sessions_rebuilt == 1
    assert counters.rollups.events_scanned == 1
    assert monthly_input == 10


def _open_database(tmp_path: Path) -> UsageDatabase:
    return UsageDatabase(tmp_path / "usage.duckdb")


def _message(message_id: str, session_id: str, created_at_ms: int, input_tokens: int = 1) -> dict[str, Any]:
    return {
        "id": message_id,
        "sessionID": session_id,
        "role": "assistant",
        "time": {"created": created_at_ms, "completed": created_at_ms + 500},
        "providerID": "anthropic",
        "modelID": "claude-sonnet",
        "path": {"root": "/home/dev/alpha"},
        "tokens": {"input": input_tokens, "output": 2, "cache": {"read": 0, "write": 0}},
        "cost": 0.01,
    }


def _write_message(path: Path, message_id: str, session_id: str, created_at_ms: int, input_tokens: int = 1) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    _ = path.write_bytes(orjson.dumps(_message(message_id, session_id, created_at_ms, input_tokens)))


def _write_messages(path: Path, messages: list[dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    _ = path.write_bytes(orjson.dumps(messages))


def _row(message_id: str, session_id: str, offset_ms: int) -> tuple[str, str, int, int, str]:
    data = {
        "role": "assistant",
        "providerID": "anthropic",
        "modelID": "claude-sonnet",
        "tokens": {"input": 10, "output": 5},
        "path": {"root": "/home/dev/alpha"},
    }
    time_updated = BASE_MS + offset_ms
    return (message_id, session_id, time_updated - 100, time_updated, json.dumps(data))


def _build_source_db(path: Path, rows: list[tuple[str, str, int, int, str]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(str(path))
    try:
        _ = connection.execute(
            "CREATE TABLE message (id TEXT PRIMARY KEY, session_id TEXT, time_created INTEGER, time_updated INTEGER, data TEXT)"
        )
        connection.commit()
    finally:
        connection.close()
    _insert_rows(path, rows)


def _insert_rows(path: Path, rows: list[tuple[str, str, int, int, str]]) -> None:
    connection = sqlite3.connect(str(path))
    try:
        _ = connection.executemany(
            "INSERT INTO message (id, session_id, time_created, time_updated, data) VALUES (?, ?, ?, ?, ?)",
            rows,
        )
        connection.commit()
    finally:
        connection.close()

"""Tests for idempotent event persistence."""

from __future__ import annotations

from pathlib import Path

from token_usage_rollup.database import UsageDatabase
from token_usage_rollup.ingestion.event_store import EventStore
from token_usage_rollup.ingestion.schemas import CodeDiffSummary, UsageEvent


def test_upsert_is_idempotent_and_first_write_wins(tmp_path: Path) -> None:
    """Re-inserting an event id should not change the stored row or report the session again."""
    database = _open_database(tmp_path)
    try:
        store = EventStore(database)
        first = store.upsert([_event("m1", input_tokens=10), _event("m2", session_id="s2")])
        second = store.upsert([_event("m1", input_tokens=999)])
        stored = store.fetch_session_events(["s1"])
        count = store.count()
    finally:
        database.close()

    assert first == {"s1", "s2"}
    assert second == set()
    assert count == 2
    assert [event.input_tokens for event in stored] == [10]


def test_write_deduplicates_within_one_batch(tmp_path: Path) -> None:
    """Duplicate ids inside one batch should store the first occurrence once."""
    database = _open_database(tmp_path)
    try:
        result = EventStore(database).write([_event("m1", input_tokens=1), _event("m1", input_tokens=2)])
        stored = EventStore(database).fetch_session_events(["s1"])
    finally:
        database.close()

    assert result.inserted == 1
    assert result.affected_session_ids == frozenset({"s1"})
    assert [event.input_tokens for event in stored] == [1]


def test_empty_batch_is_noop(tmp_path: Path) -> None:
    """Upserting nothing should return no sessions."""
    database = _open_database(tmp_path)
    try:
        assert EventStore(database).upsert([]) == set()
    finally:
        database.close()


def test_event_round_trips_through_storage(tmp_path: Path) -> None:
    """Stored events should load back with the same fields and sorted diff files."""
    event = UsageEvent(
        event_id="m1",
        session_id="s1",
        role="assistant",
        created_at_ms=1_000,
        completed_at_ms=2_500,
        tool_id="opencode",
        provider_id="anthropic",
        model_id="claude-sonnet",
        agent="build",
        mode="code",
        variant="high",
        project_root="/home/dev/alpha",
        project_cwd="/home/dev/alpha/src",
        input_tokens=10,
        output_tokens=5,
        reasoning_tokens=None,
        cache_read_tokens=3,
        cache_write_tokens=1,
        cost_usd=0.125,
        summary=CodeDiffSummary(title="Fix", additions=4, deletions=1, file_count=2, files=("b.py", "a.py")),
        finish_reason="stop",
    )
    database = _open_database(tmp_path)
    try:
        store = EventStore(database)
        _ = store.upsert_one(event)
        loaded = store.fetch_session_events(["s1"])
        contains = store.contains("m1")
        missing = store.contains("m2")
        bounds = store.time_range(["s1", "unknown-session"])
    finally:
        database.close()

    assert len(loaded) == 1
    restored = loaded[0]
    assert restored.summary is not None
    assert restored.summary.files == ("a.py", "b.py")
    assert restored.summary.additions == 4
    assert restored.reasoning_tokens is None
    assert restored.finish_reason == "stop"
    assert restored.cost_usd == 0.125
    assert (contains, missing) == (True, False)
    assert bounds == (1_000, 1_000)


def _open_database(tmp_path: Path) -> UsageDatabase:
    database = UsageDatabase(tmp_path / "usage.duckdb")
    database.ensure_schema()
    return database


def _event(event_id: str, session_id: str = "s1", input_tokens: int | None = 0) -> UsageEvent:
    return UsageEvent(
        event_id=event_id,
        session_id=session_id,
        role="assistant",
        created_at_ms=1_000,
        tool_id="opencode",
        input_tokens=input_tokens,
    )

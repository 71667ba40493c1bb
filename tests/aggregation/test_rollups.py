"""Tests for hourly, daily and monthly rollup maintenance."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from token_usage_rollup.aggregation.buckets import Granularity, datetime_to_ms
from token_usage_rollup.aggregation.rollups import RollupEngine
from token_usage_rollup.aggregation.sessions import SessionReconstructor
from token_usage_rollup.database import UsageDatabase
from token_usage_rollup.ingestion.event_store import EventStore
from token_usage_rollup.ingestion.schemas import CodeDiffSummary, UsageEvent

METRIC_COLUMNS = (
    "message_count",
    "input_tokens",
    "output_tokens",
    "reasoning_tokens",
    "cache_read_tokens",
    "cache_write_tokens",
    "duration_ms",
    "net_code_lines",
    "file_count",
)


def test_rebuild_all_sums_match_across_granularities(tmp_path: Path) -> None:
    """Three events in one session should sum to 350 input tokens in every table."""
    database = _open_database(tmp_path)
    try:
        _ingest(
            database,
            [
                _event("m1", created_at_ms=_ms(2026, 1, 15, 8, 0), input_tokens=50),
                _event("m2", created_at_ms=_ms(2026, 1, 16, 8, 0), input_tokens=100),
                _event("m3", created_at_ms=_ms(2026, 1, 16, 8, 40), input_tokens=200),
            ],
            incremental=False,
        )
        _ = RollupEngine(database).rebuild_all()

        totals = {table: _sum(database, table, "input_tokens") for table in _tables()}
        hourly_rows = _count(database, "hourly_stats")
        daily_rows = _count(database, "daily_stats")
        monthly_rows = _count(database, "monthly_stats")
    finally:
        database.close()

    assert totals == {"hourly_stats": 350, "daily_stats": 350, "monthly_stats": 350}
    assert (hourly_rows, daily_rows, monthly_rows) == (2, 2, 1)


def test_rollup_metric_sums_equal_event_sums(tmp_path: Path) -> None:
    """Every metric summed over each table should equal the same metric summed over events."""
    events = [
        _event("m1", session_id="s1", created_at_ms=_ms(2026, 3, 1, 0, 5), input_tokens=5, output_tokens=7,
               completed_offset_ms=1_500, cost_usd=0.25,
               summary=CodeDiffSummary(additions=10, deletions=3, file_count=2, files=("a.py", "b.py"))),
        _event("m2", session_id="s1", created_at_ms=_ms(2026, 3, 1, 0, 50), role="user", input_tokens=None),
        _event("m3", session_id="s2", created_at_ms=_ms(2026, 3, 2, 23, 59), model_id="gpt-5", reasoning_tokens=9,
               cache_read_tokens=40, cache_write_tokens=4, completed_offset_ms=800, cost_usd=0.5),
        _event("m4", session_id="s3", created_at_ms=_ms(2026, 4, 30, 12, 0), agent="build", project_root=None,
               summary=CodeDiffSummary(additions=1, deletions=6, file_count=1)),
    ]
    database = _open_database(tmp_path)
    try:
        _ingest(database, events, incremental=False)
        _ = RollupEngine(database, batch_size=2).rebuild_all()

        expected = {column: _event_metric_sum(database, column) for column in METRIC_COLUMNS}
        expected_cost = database.execute("SELECT SUM(cost_usd) FROM usage_events").fetchone()[0]
        for table in _tables():
            for column in METRIC_COLUMNS:
                assert _sum(database, table, column) == expected[column], (table, column)
            assert _sum(database, table, "cost_usd") == pytest.approx(expected_cost)
        unknown_projects = database.execute(
            "SELECT COUNT(*) FROM monthly_stats WHERE project_name = 'unknown'"
        ).fetchone()[0]
    finally:
        database.close()

    assert expected["message_count"] == 4
    assert expected["net_code_lines"] == 2
    assert unknown_projects == 1


def test_rebuild_all_merges_buckets_split_across_pages(tmp_path: Path) -> None:
    """A bucket whose events span two scan pages should hold their combined contribution."""
    hour = _ms(2026, 5, 10, 14, 0)
    events = [
        _event("m1", session_id="s1", created_at_ms=hour + 1_000, input_tokens=1),
        _event("m2", session_id="s1", created_at_ms=hour + 2_000, input_tokens=2),
        _event("m3", session_id="s2", created_at_ms=hour + 3_000, input_tokens=4),
        _event("m4", session_id="s1", created_at_ms=hour + 3_000, input_tokens=8),
        _event("m5", session_id="s1", created_at_ms=hour + 7_200_000, input_tokens=16),
    ]
    database = _open_database(tmp_path)
    try:
        _ingest(database, events, incremental=False)
        engine = RollupEngine(database)

        _ = engine.rebuild_all(batch_size=100)
        single_page = _rows(database)
        counters = engine.rebuild_all(batch_size=1)
        many_pages = _rows(database)
        straddled = engine.fetch_rows(Granularity.HOURLY, since_ms=hour, until_ms=hour + 3_600_000)
    finally:
        database.close()

    assert counters.pages_scanned >= 5
    assert many_pages == single_page
    assert len(straddled) == 1
    assert straddled[0].input_tokens == 15
    assert straddled[0].message_count == 4
    assert straddled[0].session_count == 2


def test_recalculate_affected_writes_both_months_of_cross_month_session(tmp_path: Path) -> None:
    """A session spanning January and February should yield one monthly row per month."""
    database = _open_database(tmp_path)
    try:
        _ingest(
            database,
            [
                _event("m1", session_id="s1", created_at_ms=_ms(2026, 1, 31, 23, 30), input_tokens=100),
                _event("m2", session_id="s1", created_at_ms=_ms(2026, 2, 1, 0, 30), input_tokens=200),
            ],
        )
        rows = RollupEngine(database).fetch_rows(Granularity.MONTHLY)
    finally:
        database.close()

    assert [(row.bucket_start_ms, row.input_tokens) for row in rows] == [
        (_ms(2026, 1, 1), 100),
        (_ms(2026, 2, 1), 200),
    ]
    assert sum(row.input_tokens for row in rows) == 300


def test_recalculate_affected_leaves_other_buckets_untouched(tmp_path: Path) -> None:
    """Rows outside the affected buckets must keep their stored values."""
    database = _open_database(tmp_path)
    try:
        _ingest(database, [_event("m0", session_id="other", created_at_ms=_ms(2026, 3, 5, 9, 0), input_tokens=7)])
        for table in _tables():
            _ = database.execute(f"UPDATE {table} SET input_tokens = 12345")

        _ingest(
            database,
            [
                _event("m1", session_id="s1", created_at_ms=_ms(2026, 1, 31, 23, 30), input_tokens=100),
                _event("m2", session_id="s1", created_at_ms=_ms(2026, 2, 1, 0, 30), input_tokens=200),
            ],
        )
        march = {
            table: database.execute(
                f"SELECT input_tokens FROM {table} WHERE bucket_start_ms >= ?",
                [_ms(2026, 3, 1)],
            ).fetchall()
            for table in _tables()
        }
    finally:
        database.close()

    assert march == {table: [(12345,)] for table in _tables()}


def test_incremental_rollups_equal_full_rebuild(tmp_path: Path) -> None:
    """Ingesting in several batches should leave the same rows as a full rebuild."""
    database = _open_database(tmp_path)
    try:
        _ingest(
            database,
            [
                _event("m1", session_id="s1", created_at_ms=_ms(2026, 6, 1, 10, 0), input_tokens=3, cost_usd=0.1),
                _event("m2", session_id="s2", created_at_ms=_ms(2026, 6, 1, 10, 30), input_tokens=5, cost_usd=0.2),
            ],
        )
        _ingest(
            database,
            [
                _event("m3", session_id="s1", created_at_ms=_ms(2026, 6, 1, 10, 45), input_tokens=7, cost_usd=0.3),
                _event("m4", session_id="s3", created_at_ms=_ms(2026, 7, 2, 1, 0), model_id="gpt-5", input_tokens=11),
            ],
        )
        incremental = _rows(database)

        _ = SessionReconstructor(database).rebuild_all()
        _ = RollupEngine(database).rebuild_all()
        rebuilt = _rows(database)
    finally:
        database.close()

    assert incremental == rebuilt


def test_project_resolution_moves_rows_out_of_unknown(tmp_path: Path) -> None:
    """Once a session gains a project root its earlier events leave the unknown project rows."""
    database = _open_database(tmp_path)
    try:
        _ingest(database, [_event("m1", session_id="s1", created_at_ms=_ms(2026, 8, 1, 9, 0), project_root=None)])
        before = database.execute("SELECT DISTINCT project_name FROM daily_stats").fetchall()

        _ingest(
            database,
            [_event("m2", session_id="s1", created_at_ms=_ms(2026, 8, 1, 9, 5), project_root="/src/alpha/")],
        )
        after = database.execute("SELECT project_name, message_count FROM daily_stats").fetchall()
    finally:
        database.close()

    assert before == [("unknown",)]
    assert after == [("alpha", 2)]


def test_recalculate_affected_with_no_sessions_is_noop(tmp_path: Path) -> None:
    """An empty session set should not touch any table."""
    database = _open_database(tmp_path)
    try:
        counters = RollupEngine(database).recalculate_affected(set())
    finally:
        database.close()

    assert counters.events_scanned == 0
    assert counters.rows_written == {}


def _ingest(database: UsageDatabase, events: list[UsageEvent], incremental: bool = True) -> None:
    affected = EventStore(database).upsert(events)
    if incremental and affected:
        _ = SessionReconstructor(database).recalculate(affected)
        _ = RollupEngine(database).recalculate_affected(affected)
    elif not incremental:
        _ = SessionReconstructor(database).rebuild_all()


def _open_database(tmp_path: Path) -> UsageDatabase:
    database = UsageDatabase(tmp_path / "usage.duckdb")
    database.ensure_schema()
    return database


def _tables() -> list[str]:
    return [granularity.table_name for granularity in Granularity]


def _rows(database: UsageDatabase) -> dict[str, list[tuple]]:
    return {
        table: database.execute(
            f"SELECT * FROM {table} ORDER BY bucket_start_ms, project_name, provider_id, model_id, role, agent, tool_id"
        ).fetchall()
        for table in _tables()
    }


def _sum(database: UsageDatabase, table: str, column: str):
    return database.execute(f"SELECT COALESCE(SUM({column}), 0) FROM {table}").fetchone()[0]


def _count(database: UsageDatabase, table: str) -> int:
    return database.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def _event_metric_sum(database: UsageDatabase, column: str) -> int:
    expressions = {
        "message_count": "COUNT(*)",
        "input_tokens": "SUM(COALESCE(input_tokens, 0))",
        "output_tokens": "SUM(COALESCE(output_tokens, 0))",
        "reasoning_tokens": "SUM(COALESCE(reasoning_tokens, 0))",
        "cache_read_tokens": "SUM(cache_read_tokens)",
        "cache_write_tokens": "SUM(cache_write_tokens)",
        "duration_ms": "COALESCE(SUM(completed_at_ms - created_at_ms), 0)",
        "net_code_lines": "SUM(summary_additions - summary_deletions)",
        "file_count": "SUM(summary_file_count)",
    }
    return database.execute(f"SELECT {expressions[column]} FROM usage_events").fetchone()[0]


def _ms(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> int:
    return datetime_to_ms(datetime(year, month, day, hour, minute, tzinfo=UTC))


def _event(
    event_id: str,
    session_id: str = "s1",
    created_at_ms: int = 0,
    role: str = "assistant",
    model_id: str = "claude-sonnet",
    agent: str | None = None,
    input_tokens: int | None = 0,
    output_tokens: int | None = 0,
    reasoning_tokens: int | None = 0,
    cache_read_tokens: int = 0,
    cache_write_tokens: int = 0,
    completed_offset_ms: int | None = None,
    cost_usd: float = 0.0,
    project_root: str | None = "/home/dev/alpha",
    summary: CodeDiffSummary | None = None,
) -> UsageEvent:
    return UsageEvent(
        event_id=event_id,
        session_id=session_id,
        role=role,
        created_at_ms=created_at_ms,
        completed_at_ms=created_at_ms + completed_offset_ms if completed_offset_ms is not None else None,
        tool_id="opencode",
        provider_id="anthropic",
        model_id=model_id,
        agent=agent,
        project_root=project_root,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        reasoning_tokens=reasoning_tokens,
        cache_read_tokens=cache_read_tokens,
        cache_write_tokens=cache_write_tokens,
        cost_usd=cost_usd,
        summary=summary,
    )

"""DuckDB connection and schema bootstrap shared by every component."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

import duckdb

T = TypeVar("T")

STAT_TABLES: tuple[str, ...] = ("hourly_stats", "daily_stats", "monthly_stats")


class UsageDatabase:
    """Owns the single read-write DuckDB connection of one local store."""

    def __init__(self, database_path: Path | str) -> None:
        self._database_path = str(database_path)
        self._connection = duckdb.connect(self._database_path)
        self._transaction_depth = 0

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        return self._connection

    def close(self) -> None:
        """Close DuckDB connection."""
        self._connection.close()

    def execute(self, query: str, parameters: list[Any] | None = None) -> duckdb.DuckDBPyConnection:
        """Execute one statement on the shared connection."""
        if parameters is None:
            return self._connection.execute(query)
        return self._connection.execute(query, parameters)

    def executemany(self, query: str, rows: list[list[Any]]) -> None:
        """Execute one statement for each parameter row."""
        if not rows:
            return
        _ = self._connection.executemany(query, rows)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Open a DB transaction scope; nested scopes join the outermost one."""
        if self._transaction_depth > 0:
            self._transaction_depth += 1
            try:
                yield
            finally:
                self._transaction_depth -= 1
            return

        _ = self._connection.execute("BEGIN TRANSACTION")
        self._transaction_depth = 1
        try:
            yield
        except Exception:
            self._transaction_depth = 0
            _ = self._connection.execute("ROLLBACK")
            raise
        else:
            self._transaction_depth = 0
            _ = self._connection.execute("COMMIT")

    def ensure_schema(self) -> None:
        """Create event, session, source and rollup tables when missing."""
        _ = self._connection.execute(
            """
CREATE TABLE IF NOT EXISTS usage_events (
    event_id VARCHAR PRIMARY KEY,
    session_id VARCHAR NOT NULL,
    role VARCHAR NOT NULL,
    created_at_ms BIGINT NOT NULL,
    completed_at_ms BIGINT,
    provider_id VARCHAR,
    model_id VARCHAR,
    agent VARCHAR,
    mode VARCHAR,
    variant VARCHAR,
    project_root VARCHAR,
    project_cwd VARCHAR,
    input_tokens BIGINT,
    output_tokens BIGINT,
    reasoning_tokens BIGINT,
    cache_read_tokens BIGINT NOT NULL DEFAULT 0,
    cache_write_tokens BIGINT NOT NULL DEFAULT 0,
    cost_usd DOUBLE NOT NULL DEFAULT 0,
    summary_title VARCHAR,
    summary_additions BIGINT NOT NULL DEFAULT 0,
    summary_deletions BIGINT NOT NULL DEFAULT 0,
    summary_file_count BIGINT NOT NULL DEFAULT 0,
    finish_reason VARCHAR,
    diff_files VARCHAR,
    tool_id VARCHAR NOT NULL,
    ingested_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
            """
        )
        _ = self._connection.execute(
            """
CREATE INDEX IF NOT EXISTS idx_usage_events_session
ON usage_events (session_id)
            """
        )
        _ = self._connection.execute(
            """
CREATE INDEX IF NOT EXISTS idx_usage_events_created
ON usage_events (created_at_ms, event_id)
            """
        )
        _ = self._connection.execute(
            """
CREATE TABLE IF NOT EXISTS source_metadata (
    source_key VARCHAR PRIMARY KEY,
    tool_id VARCHAR NOT NULL,
    content_hash VARCHAR NOT NULL,
    watermark VARCHAR,
    last_synced_at_ms BIGINT NOT NULL,
    event_count BIGINT NOT NULL,
    first_event_ms BIGINT,
    last_event_ms BIGINT,
    source_exists BOOLEAN NOT NULL DEFAULT TRUE
)
            """
        )
        _ = self._connection.execute(
            """
CREATE TABLE IF NOT EXISTS sessions (
    session_id VARCHAR NOT NULL,
    tool_id VARCHAR NOT NULL,
    first_event_ms BIGINT NOT NULL,
    last_event_ms BIGINT NOT NULL,
    user_message_count BIGINT NOT NULL,
    agent_message_count BIGINT NOT NULL,
    input_tokens BIGINT NOT NULL,
    output_tokens BIGINT NOT NULL,
    reasoning_tokens BIGINT NOT NULL,
    cache_read_tokens BIGINT NOT NULL,
    cache_write_tokens BIGINT NOT NULL,
    cost_usd DOUBLE NOT NULL,
    total_additions BIGINT NOT NULL,
    total_deletions BIGINT NOT NULL,
    total_file_count BIGINT NOT NULL,
    total_edits BIGINT NOT NULL,
    is_orphan BOOLEAN NOT NULL,
    project_name VARCHAR,
    finish_reason VARCHAR
)
            """
        )
        for table_name in STAT_TABLES:
            _ = self._connection.execute(
                f"""
CREATE TABLE IF NOT EXISTS {table_name} (
    bucket_start_ms BIGINT NOT NULL,
    project_name VARCHAR NOT NULL,
    provider_id VARCHAR NOT NULL,
    model_id VARCHAR NOT NULL,
    role VARCHAR NOT NULL,
    agent VARCHAR NOT NULL,
    tool_id VARCHAR NOT NULL,
    session_count BIGINT NOT NULL,
    message_count BIGINT NOT NULL,
    input_tokens BIGINT NOT NULL,
    output_tokens BIGINT NOT NULL,
    reasoning_tokens BIGINT NOT NULL,
    cache_read_tokens BIGINT NOT NULL,
    cache_write_tokens BIGINT NOT NULL,
    duration_ms BIGINT NOT NULL,
    cost_usd DOUBLE NOT NULL,
    net_code_lines BIGINT NOT NULL,
    file_count BIGINT NOT NULL,
    last_event_ms BIGINT NOT NULL
)
                """
            )


def placeholders(values: Sequence[Any]) -> str:
    """Return a `?, ?, ...` list matching the number of values."""
    return ", ".join("?" for _ in values)


def chunked(values: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most `size` values."""
    if size <= 0:
        raise ValueError("size must be positive")
    for start in range(0, len(values), size):
        yield values[start : start + size]

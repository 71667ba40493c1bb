"""Session summaries derived from the events sharing a session id."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from itertools import groupby
from typing import Any

from ..database import UsageDatabase, chunked, placeholders
from ..ingestion.event_store import EVENT_COLUMNS, row_to_event
from ..ingestion.schemas import UsageEvent
from .schemas import SessionSummary

LOGGER = logging.getLogger(__name__)

USER_ROLE = "user"
AGENT_ROLE = "assistant"

SESSION_COLUMNS: tuple[str, ...] = (
    "session_id",
    "tool_id",
    "first_event_ms",
    "last_event_ms",
    "user_message_count",
    "agent_message_count",
    "input_tokens",
    "output_tokens",
    "reasoning_tokens",
    "cache_read_tokens",
    "cache_write_tokens",
    "cost_usd",
    "total_additions",
    "total_deletions",
    "total_file_count",
    "total_edits",
    "is_orphan",
    "project_name",
    "finish_reason",
)

_PATH_SEPARATORS = re.compile(r"[\\/]+")


def extract_project_name(project_path: str | None) -> str | None:
    """Return the last non-empty segment of a project path."""
    if project_path is None:
        return None
    stripped = project_path.strip().rstrip("/\\")
    if not stripped:
        return None
    segment = _PATH_SEPARATORS.split(stripped)[-1]
    return segment or None


def resolve_project_name(events: Iterable[UsageEvent]) -> str | None:
    """Pick the first resolvable project root, falling back to the working directory."""
    for event in events:
        name = extract_project_name(event.project_root) or extract_project_name(event.project_cwd)
        if name is not None:
            return name
    return None


def summarize_session(session_id: str, events: list[UsageEvent]) -> SessionSummary:
    """Aggregate one session's events, ordered by creation time."""
    if not events:
        raise ValueError(f"Session {session_id} has no events")
    ordered = sorted(events, key=lambda event: (event.created_at_ms, event.event_id))

    unique_files: set[str] = set()
    summed_file_count = 0
    additions = 0
    deletions = 0
    for event in ordered:
        if event.summary is None:
            continue
        additions += event.summary.additions
        deletions += event.summary.deletions
        summed_file_count += event.summary.file_count
        unique_files.update(path for path in event.summary.files if path)

    finish_reason: str | None = None
    for event in reversed(ordered):
        if event.finish_reason is not None:
            finish_reason = event.finish_reason
            break

    project_name = resolve_project_name(ordered)
    return SessionSummary(
        session_id=session_id,
        tool_id=ordered[0].tool_id,
        first_event_ms=ordered[0].created_at_ms,
        last_event_ms=ordered[-1].created_at_ms,
        user_message_count=sum(1 for event in ordered if event.role == USER_ROLE),
        agent_message_count=sum(1 for event in ordered if event.role == AGENT_ROLE or event.agent),
        input_tokens=sum(event.input_tokens or 0 for event in ordered),
        output_tokens=sum(event.output_tokens or 0 for event in ordered),
        reasoning_tokens=sum(event.reasoning_tokens or 0 for event in ordered),
        cache_read_tokens=sum(event.cache_read_tokens for event in ordered),
        cache_write_tokens=sum(event.cache_write_tokens for event in ordered),
        cost_usd=sum(event.cost_usd for event in ordered),
        total_additions=additions,
        total_deletions=deletions,
        total_file_count=len(unique_files) if unique_files else summed_file_count,
        total_edits=summed_file_count,
        is_orphan=project_name is None,
        project_name=project_name,
        finish_reason=finish_reason,
    )


class SessionReconstructor:
    """Keeps the sessions table equal to the aggregation of its events."""

    def __init__(self, database: UsageDatabase, batch_size: int = 500) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._database = database
        self._batch_size = batch_size

    def rebuild_all(self) -> int:
        """Recompute every session from scratch and return the number written."""
        written = 0
        with self._database.transaction():
            _ = self._database.execute("DELETE FROM sessions")
            last_session_id: str | None = None
            while True:
                session_ids = self._next_session_ids(last_session_id)
                if not session_ids:
                    break
                written += self._replace(session_ids)
                last_session_id = session_ids[-1]
        LOGGER.info("Rebuilt %d sessions.", written)
        return written

    def recalculate(self, session_ids: Iterable[str]) -> int:
        """Recompute only the named sessions from exactly their events."""
        ids = sorted(set(session_ids))
        if not ids:
            return 0
        written = 0
        with self._database.transaction():
            for chunk in chunked(ids, self._batch_size):
                written += self._replace(list(chunk))
        LOGGER.info("Recalculated %d of %d sessions.", written, len(ids))
        return written

    def delete_session(self, session_id: str) -> int:
        """Remove one session row together with all its events."""
        with self._database.transaction():
            row = self._database.execute(
                "SELECT COUNT(*) FROM usage_events WHERE session_id = ?",
                [session_id],
            ).fetchone()
            _ = self._database.execute("DELETE FROM usage_events WHERE session_id = ?", [session_id])
            _ = self._database.execute("DELETE FROM sessions WHERE session_id = ?", [session_id])
        deleted_events = int(row[0]) if row is not None else 0
        LOGGER.info("Deleted session %s with %d events.", session_id, deleted_events)
        return deleted_events

    def get(self, session_id: str) -> SessionSummary | None:
        """Return the stored summary of one session."""
        row = self._database.execute(
            f"SELECT {', '.join(SESSION_COLUMNS)} FROM sessions WHERE session_id = ?",
            [session_id],
        ).fetchone()
        if row is None:
            return None
        return _row_to_summary(row)

    def _next_session_ids(self, after: str | None) -> list[str]:
        if after is None:
            rows = self._database.execute(
                """
SELECT DISTINCT session_id
FROM usage_events
ORDER BY session_id
LIMIT ?
                """,
                [self._batch_size],
            ).fetchall()
        else:
            rows = self._database.execute(
                """
SELECT DISTINCT session_id
FROM usage_events
WHERE session_id > ?
ORDER BY session_id
LIMIT ?
                """,
                [after, self._batch_size],
            ).fetchall()
        return [str(row[0]) for row in rows]

    def _replace(self, session_ids: list[str]) -> int:
        rows = self._database.execute(
            f"""
SELECT {", ".join(EVENT_COLUMNS)}
FROM usage_events
WHERE session_id IN ({placeholders(session_ids)})
ORDER BY session_id, created_at_ms, event_id
            """,
            list(session_ids),
        ).fetchall()
        events = [row_to_event(row) for row in rows]
        summaries = [
            summarize_session(session_id, list(group))
            for session_id, group in groupby(events, key=lambda event: event.session_id)
        ]

        _ = self._database.execute(
            f"DELETE FROM sessions WHERE session_id IN ({placeholders(session_ids)})",
            list(session_ids),
        )
        self._database.executemany(
            f"""
INSERT INTO sessions ({", ".join(SESSION_COLUMNS)})
VALUES ({placeholders(SESSION_COLUMNS)})
            """,
            [_summary_to_row(summary) for summary in summaries],
        )
        return len(summaries)


def _summary_to_row(summary: SessionSummary) -> list[Any]:
    return [getattr(summary, column) for column in SESSION_COLUMNS]


def _row_to_summary(row: tuple) -> SessionSummary:
    return SessionSummary(
        session_id=str(row[0]),
        tool_id=str(row[1]),
        first_event_ms=int(row[2]),
        last_event_ms=int(row[3]),
        user_message_count=int(row[4]),
        agent_message_count=int(row[5]),
        input_tokens=int(row[6]),
        output_tokens=int(row[7]),
        reasoning_tokens=int(row[8]),
        cache_read_tokens=int(row[9]),
        cache_write_tokens=int(row[10]),
        cost_usd=float(row[11]),
        total_additions=int(row[12]),
        total_deletions=int(row[13]),
        total_file_count=int(row[14]),
        total_edits=int(row[15]),
        is_orphan=bool(row[16]),
        project_name=row[17],
        finish_reason=row[18],
    )

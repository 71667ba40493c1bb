"""Idempotent persistence of canonical usage events."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from ..database import UsageDatabase, chunked, placeholders
from .schemas import CodeDiffSummary, UsageEvent

LOGGER = logging.getLogger(__name__)

LOOKUP_CHUNK_SIZE = 500

EVENT_COLUMNS: tuple[str, ...] = (
    "event_id",
    "session_id",
    "role",
    "created_at_ms",
    "completed_at_ms",
    "provider_id",
    "model_id",
    "agent",
    "mode",
    "variant",
    "project_root",
    "project_cwd",
    "input_tokens",
    "output_tokens",
    "reasoning_tokens",
    "cache_read_tokens",
    "cache_write_tokens",
    "cost_usd",
    "summary_title",
    "summary_additions",
    "summary_deletions",
    "summary_file_count",
    "finish_reason",
    "diff_files",
    "tool_id",
)


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of one idempotent write."""

    inserted: int
    affected_session_ids: frozenset[str]


class EventStore:
    """Append-only store keyed by event id where the first write wins."""

    def __init__(self, database: UsageDatabase) -> None:
        self._database = database

    def upsert(self, events: Iterable[UsageEvent]) -> set[str]:
        """Insert unseen events and return the session ids they belong to."""
        return set(self.write(events).affected_session_ids)

    def write(self, events: Iterable[UsageEvent]) -> UpsertResult:
        """Insert unseen events and report how many were new."""
        unique: dict[str, UsageEvent] = {}
        for event in events:
            unique.setdefault(event.event_id, event)
        if not unique:
            return UpsertResult(inserted=0, affected_session_ids=frozenset())

        with self._database.transaction():
            existing = self._existing_ids(list(unique))
            fresh = [event for event_id, event in unique.items() if event_id not in existing]
            if fresh:
                self._insert(fresh)

        LOGGER.info("Inserted %d of %d events (%d duplicates ignored).", len(fresh), len(unique), len(existing))
        return UpsertResult(
            inserted=len(fresh),
            affected_session_ids=frozenset(event.session_id for event in fresh),
        )

    def upsert_one(self, event: UsageEvent) -> set[str]:
        """Insert a single event with the same semantics as `upsert`."""
        return self.upsert([event])

    def count(self) -> int:
        """Return the number of stored events."""
        row = self._database.execute("SELECT COUNT(*) FROM usage_events").fetchone()
        return int(row[0]) if row is not None else 0

    def contains(self, event_id: str) -> bool:
        """Return True when the event id is already stored."""
        return bool(self._existing_ids([event_id]))

    def time_range(self, session_ids: Iterable[str]) -> tuple[int, int] | None:
        """Return the (min, max) creation time over the given sessions' events."""
        ids = sorted(set(session_ids))
        bounds: tuple[int, int] | None = None
        for chunk in chunked(ids, LOOKUP_CHUNK_SIZE):
            row = self._database.execute(
                f"""
SELECT MIN(created_at_ms), MAX(created_at_ms)
FROM usage_events
WHERE session_id IN ({placeholders(chunk)})
                """,
                list(chunk),
            ).fetchone()
            if row is None or row[0] is None:
                continue
            low, high = int(row[0]), int(row[1])
            bounds = (low, high) if bounds is None else (min(bounds[0], low), max(bounds[1], high))
        return bounds

    def fetch_session_events(self, session_ids: Iterable[str]) -> list[UsageEvent]:
        """Load the events of the given sessions ordered by session then time."""
        ids = sorted(set(session_ids))
        events: list[UsageEvent] = []
        for chunk in chunked(ids, LOOKUP_CHUNK_SIZE):
            rows = self._database.execute(
                f"""
SELECT {", ".join(EVENT_COLUMNS)}
FROM usage_events
WHERE session_id IN ({placeholders(chunk)})
ORDER BY session_id, created_at_ms, event_id
                """,
                list(chunk),
            ).fetchall()
            events.extend(row_to_event(row) for row in rows)
        return events

    def _existing_ids(self, event_ids: list[str]) -> set[str]:
        existing: set[str] = set()
        for chunk in chunked(event_ids, LOOKUP_CHUNK_SIZE):
            rows = self._database.execute(
                f"SELECT event_id FROM usage_events WHERE event_id IN ({placeholders(chunk)})",
                list(chunk),
            ).fetchall()
            existing.update(str(row[0]) for row in rows)
        return existing

    def _insert(self, events: list[UsageEvent]) -> None:
        self._database.executemany(
            f"""
INSERT INTO usage_events ({", ".join(EVENT_COLUMNS)})
VALUES ({placeholders(EVENT_COLUMNS)})
ON CONFLICT (event_id) DO NOTHING
            """,
            [event_to_row(event) for event in events],
        )


def event_to_row(event: UsageEvent) -> list[Any]:
    """Flatten an event into usage_events column order."""
    summary = event.summary or CodeDiffSummary()
    diff_files = ",".join(sorted(set(summary.files))) if summary.files else None
    return [
        event.event_id,
        event.session_id,
        event.role,
        event.created_at_ms,
        event.completed_at_ms,
        event.provider_id,
        event.model_id,
        event.agent,
        event.mode,
        event.variant,
        event.project_root,
        event.project_cwd,
        event.input_tokens,
        event.output_tokens,
        event.reasoning_tokens,
        event.cache_read_tokens,
        event.cache_write_tokens,
        event.cost_usd,
        summary.title,
        summary.additions,
        summary.deletions,
        summary.file_count,
        event.finish_reason,
        diff_files,
        event.tool_id,
    ]


def row_to_event(row: Sequence[Any]) -> UsageEvent:
    """Rebuild an event from a row selected in EVENT_COLUMNS order."""
    diff_files = tuple(str(row[23]).split(",")) if row[23] else ()
    has_summary = row[18] is not None or bool(row[19]) or bool(row[20]) or bool(row[21]) or bool(diff_files)
    summary = (
        CodeDiffSummary(
            title=row[18],
            additions=int(row[19]),
            deletions=int(row[20]),
            file_count=int(row[21]),
            files=diff_files,
        )
        if has_summary
        else None
    )
    return UsageEvent(
        event_id=str(row[0]),
        session_id=str(row[1]),
        role=str(row[2]),
        created_at_ms=int(row[3]),
        completed_at_ms=_optional_int(row[4]),
        provider_id=row[5],
        model_id=row[6],
        agent=row[7],
        mode=row[8],
        variant=row[9],
        project_root=row[10],
        project_cwd=row[11],
        input_tokens=_optional_int(row[12]),
        output_tokens=_optional_int(row[13]),
        reasoning_tokens=_optional_int(row[14]),
        cache_read_tokens=int(row[15]),
        cache_write_tokens=int(row[16]),
        cost_usd=float(row[17]),
        summary=summary,
        finish_reason=row[22],
        tool_id=str(row[24]),
    )


def _optional_int(value: Any) -> int | None:
    return int(value) if value is not None else None

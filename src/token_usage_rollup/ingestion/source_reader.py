"""Read-only SQLite reader for OpenCode message storage."""

from __future__ import annotations

import hashlib
import logging
import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import orjson

from .errors import ParseError, SourceSchemaError, SourceUnreadableError
from .parser import parse_message_payload
from .schemas import ParseResult, UsageEvent

LOGGER = logging.getLogger(__name__)

REQUIRED_TABLES: tuple[str, ...] = ("message",)
WATERMARK_SEPARATOR = "|"


@dataclass(frozen=True)
class SourceCursor:
    """Keyset position over `(time_updated, id)`."""

    last_time_updated_ms: int
    last_message_id: str

    def to_watermark(self) -> str:
        return f"{self.last_time_updated_ms}{WATERMARK_SEPARATOR}{self.last_message_id}"

    @classmethod
    def from_watermark(cls, watermark: str | None) -> SourceCursor | None:
        if not watermark:
            return None
        time_part, separator, message_id = watermark.partition(WATERMARK_SEPARATOR)
        if not separator:
            return None
        try:
            return cls(last_time_updated_ms=int(time_part), last_message_id=message_id)
        except ValueError:
            LOGGER.warning("Ignoring malformed watermark: %s", watermark)
            return None


@dataclass(frozen=True)
class SourceMessageRow:
    """Raw message row loaded from SQLite."""

    message_id: str
    session_id: str
    time_created_ms: int | None
    time_updated_ms: int
    data_json: str


class SourceReader:
    """Read messages from OpenCode SQLite storage."""

    def __init__(self, source_db_path: Path) -> None:
        self._source_db_path = source_db_path
        self._connection = _connect_read_only(source_db_path)

    def close(self) -> None:
        """Close SQLite connection."""
        self._connection.close()

    def ensure_schema(self) -> None:
        """Fail unless every table the parser reads is present."""
        tables = {
            str(row[0]) for row in self._execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        }
        for name in REQUIRED_TABLES:
            if name not in tables:
                raise SourceSchemaError(f"{self._source_db_path} has no '{name}' table; not an OpenCode message store")

    def fingerprint(self) -> str:
        """Return a cheap change fingerprint from the row count and latest update."""
        row = self._execute("SELECT COUNT(*), MAX(time_updated) FROM message").fetchone()
        count = int(row[0]) if row is not None and row[0] is not None else 0
        latest = int(row[1]) if row is not None and row[1] is not None else 0
        return hashlib.sha256(f"{count}:{latest}".encode()).hexdigest()

    def iter_rows(self, cursor: SourceCursor | None, batch_size: int) -> Iterator[list[SourceMessageRow]]:
        """Yield pages of rows ordered by `(time_updated, id)` after `cursor`."""
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        while True:
            params: dict[str, Any] = {
                "last_time": cursor.last_time_updated_ms if cursor else None,
                "last_id": cursor.last_message_id if cursor else None,
                "limit": batch_size,
            }
            rows = self._execute(
                """
SELECT
    m.id AS message_id,
    m.session_id,
    m.time_created,
    m.time_updated,
    m.data
FROM message m
WHERE (
    :last_time IS NULL
    OR m.time_updated > :last_time
    OR (m.time_updated = :last_time AND m.id > :last_id)
)
ORDER BY m.time_updated ASC, m.id ASC
LIMIT :limit
                """,
                params,
            ).fetchall()
            if not rows:
                return
            page = [_row_to_source_message(row) for row in rows]
            yield page
            if len(page) < batch_size:
                return
            cursor = SourceCursor(page[-1].time_updated_ms, page[-1].message_id)

    def _execute(self, query: str, params: Any = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(query, params)
        except sqlite3.Error as exc:
            raise SourceUnreadableError(f"Failed to query source database {self._source_db_path}: {exc}") from exc


class OpenCodeDatabaseParser:
    """Incrementally parse the OpenCode `message` table after a stored watermark."""

    def __init__(self, tool_id: str, batch_size: int = 1000) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._tool_id = tool_id
        self._batch_size = batch_size

    def fingerprint(self, path: Path) -> str:
        """Fingerprint the database from its message count and latest update."""
        reader = SourceReader(path)
        try:
            reader.ensure_schema()
            return reader.fingerprint()
        finally:
            reader.close()

    def parse(self, path: Path, watermark: str | None = None) -> ParseResult:
        """Parse rows updated after `watermark`; malformed rows are logged and skipped."""
        reader = SourceReader(path)
        try:
            reader.ensure_schema()
            cursor = SourceCursor.from_watermark(watermark)
            events: list[UsageEvent] = []
            rows_skipped = 0
            for page in reader.iter_rows(cursor, self._batch_size):
                for row in page:
                    try:
                        events.append(self._parse_row(row, path))
                    except ParseError as exc:
                        rows_skipped += 1
                        LOGGER.warning("Skipping message %s in %s: %s", row.message_id, path, exc)
                cursor = SourceCursor(page[-1].time_updated_ms, page[-1].message_id)
        finally:
            reader.close()

        if rows_skipped:
            LOGGER.warning("Skipped %d malformed messages in %s", rows_skipped, path)
        next_watermark = cursor.to_watermark() if cursor is not None else watermark
        return ParseResult.from_events(events, watermark=next_watermark)

    def _parse_row(self, row: SourceMessageRow, path: Path) -> UsageEvent:
        try:
            payload = orjson.loads(row.data_json)
        except orjson.JSONDecodeError as exc:
            raise ParseError(f"Invalid JSON in message {row.message_id}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ParseError(f"Expected object payload in message {row.message_id}")

        payload["id"] = row.message_id
        payload["sessionID"] = row.session_id
        time_payload = payload.get("time")
        if row.time_created_ms is not None and (
            not isinstance(time_payload, dict) or time_payload.get("created") is None
        ):
            payload["time"] = {**(time_payload if isinstance(time_payload, dict) else {}), "created": row.time_created_ms}
        return parse_message_payload(payload, tool_id=self._tool_id, source=str(path))


def _connect_read_only(source_db_path: Path) -> sqlite3.Connection:
    resolved = source_db_path.expanduser().resolve()
    if not resolved.is_file():
        raise SourceUnreadableError(f"No OpenCode database at {resolved}")
    try:
        return sqlite3.connect(f"{resolved.as_uri()}?mode=ro", uri=True)
    except sqlite3.Error as exc:
        raise SourceUnreadableError(f"Cannot open {resolved} read-only: {exc}") from exc


def _row_to_source_message(row: tuple[Any, ...]) -> SourceMessageRow:
    return SourceMessageRow(
        message_id=str(row[0]),
        session_id=str(row[1]),
        time_created_ms=int(row[2]) if row[2] is not None else None,
        time_updated_ms=int(row[3]),
        data_json=str(row[4]),
    )

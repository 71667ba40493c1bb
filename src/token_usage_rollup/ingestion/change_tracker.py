"""Per-source change detection backed by the source_metadata table."""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from ..database import UsageDatabase
from .errors import IngestionError, SourceUnreadableError
from .schemas import SourceClassification, SourceMetadata, SourceStatus

LOGGER = logging.getLogger(__name__)

Fingerprinter = Callable[[Path], str]


def current_time_ms() -> int:
    """Return the wall clock as epoch milliseconds."""
    return time.time_ns() // 1_000_000


class ChangeTracker:
    """Classifies sources as new, unchanged, modified or unreadable."""

    def __init__(
        self,
        database: UsageDatabase,
        stable_read_attempts: int = 3,
        stable_read_delay_seconds: float = 0.05,
        clock: Callable[[], int] = current_time_ms,
    ) -> None:
        if stable_read_attempts <= 0:
            raise ValueError("stable_read_attempts must be positive")
        self._database = database
        self._stable_read_attempts = stable_read_attempts
        self._stable_read_delay_seconds = stable_read_delay_seconds
        self._clock = clock

    def classify(
        self,
        source_key: str,
        path: Path,
        fingerprint: Fingerprinter | None = None,
    ) -> SourceClassification:
        """Compare a fresh fingerprint of `path` with the stored metadata row."""
        try:
            content_hash = fingerprint(path) if fingerprint is not None else self.compute_file_hash(path)
        except (OSError, IngestionError) as exc:
            LOGGER.warning("Source is unreadable: %s (%s)", source_key, exc)
            return SourceClassification(status=SourceStatus.UNREADABLE, error=str(exc))

        previous = self.get(source_key)
        if previous is None:
            status = SourceStatus.NEW
        elif previous.content_hash == content_hash:
            status = SourceStatus.UNCHANGED
        else:
            status = SourceStatus.MODIFIED
        return SourceClassification(status=status, fingerprint=content_hash, previous=previous)

    def compute_file_hash(self, path: Path) -> str:
        """Hash file bytes once two consecutive reads agree."""
        previous_digest: str | None = None
        for attempt in range(self._stable_read_attempts + 1):
            digest = hashlib.sha256(path.read_bytes()).hexdigest()
            if digest == previous_digest:
                return digest
            previous_digest = digest
            if attempt < self._stable_read_attempts and self._stable_read_delay_seconds > 0:
                time.sleep(self._stable_read_delay_seconds)
        raise SourceUnreadableError(f"Source kept changing while being read: {path}")

    def get(self, source_key: str) -> SourceMetadata | None:
        """Return stored metadata for one source."""
        row = self._database.execute(
            """
SELECT
    source_key,
    tool_id,
    content_hash,
    watermark,
    last_synced_at_ms,
    event_count,
    first_event_ms,
    last_event_ms,
    source_exists
FROM source_metadata
WHERE source_key = ?
            """,
            [source_key],
        ).fetchone()
        if row is None:
            return None
        return _row_to_metadata(row)

    def list_sources(self, tool_id: str | None = None) -> list[SourceMetadata]:
        """Return tracked sources ordered by key, optionally for one tool."""
        query = """
SELECT
    source_key,
    tool_id,
    content_hash,
    watermark,
    last_synced_at_ms,
    event_count,
    first_event_ms,
    last_event_ms,
    source_exists
FROM source_metadata
        """
        parameters: list[str] = []
        if tool_id is not None:
            query += "WHERE tool_id = ?\n"
            parameters.append(tool_id)
        query += "ORDER BY source_key"
        rows = self._database.execute(query, parameters).fetchall()
        return [_row_to_metadata(row) for row in rows]

    def record(
        self,
        source_key: str,
        tool_id: str,
        content_hash: str,
        event_count: int,
        first_event_ms: int | None,
        last_event_ms: int | None,
        watermark: str | None = None,
    ) -> SourceMetadata:
        """Upsert the metadata row after a successful ingestion."""
        metadata = SourceMetadata(
            source_key=source_key,
            tool_id=tool_id,
            content_hash=content_hash,
            watermark=watermark,
            last_synced_at_ms=self._clock(),
            event_count=event_count,
            first_event_ms=first_event_ms,
            last_event_ms=last_event_ms,
            source_exists=True,
        )
        _ = self._database.execute(
            """
INSERT INTO source_metadata (
    source_key,
    tool_id,
    content_hash,
    watermark,
    last_synced_at_ms,
    event_count,
    first_event_ms,
    last_event_ms,
    source_exists
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (source_key)
DO UPDATE SET
    tool_id = EXCLUDED.tool_id,
    content_hash = EXCLUDED.content_hash,
    watermark = EXCLUDED.watermark,
    last_synced_at_ms = EXCLUDED.last_synced_at_ms,
    event_count = EXCLUDED.event_count,
    first_event_ms = EXCLUDED.first_event_ms,
    last_event_ms = EXCLUDED.last_event_ms,
    source_exists = EXCLUDED.source_exists
            """,
            [
                metadata.source_key,
                metadata.tool_id,
                metadata.content_hash,
                metadata.watermark,
                metadata.last_synced_at_ms,
                metadata.event_count,
                metadata.first_event_ms,
                metadata.last_event_ms,
                metadata.source_exists,
            ],
        )
        return metadata

    def mark_missing(self, tool_id: str, present_keys: Iterable[str]) -> int:
        """Flag tracked sources of one tool that were not seen on disk."""
        present = set(present_keys)
        missing = [
            source.source_key
            for source in self.list_sources(tool_id)
            if source.source_exists and source.source_key not in present
        ]
        if not missing:
            return 0
        self._database.executemany(
            "UPDATE source_metadata SET source_exists = FALSE WHERE source_key = ?",
            [[source_key] for source_key in missing],
        )
        for source_key in missing:
            LOGGER.info("Marked missing source: %s", source_key)
        return len(missing)


def _row_to_metadata(row: tuple) -> SourceMetadata:
    return SourceMetadata(
        source_key=str(row[0]),
        tool_id=str(row[1]),
        content_hash=str(row[2]),
        watermark=str(row[3]) if row[3] is not None else None,
        last_synced_at_ms=int(row[4]),
        event_count=int(row[5]),
        first_event_ms=int(row[6]) if row[6] is not None else None,
        last_event_ms=int(row[7]) if row[7] is not None else None,
        source_exists=bool(row[8]),
    )

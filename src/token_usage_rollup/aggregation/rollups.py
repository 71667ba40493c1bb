"""Hourly, daily and monthly rollup maintenance over the usage_events table."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from ..database import UsageDatabase, chunked, placeholders
from .buckets import GRANULARITIES, Granularity, merge_bucket_spans, next_bucket_start, truncate
from .schemas import UNKNOWN_LABEL, RollupCounters, StatBucketRow, StatDimensions

LOGGER = logging.getLogger(__name__)

LOOKUP_CHUNK_SIZE = 500

STAT_COLUMNS: tuple[str, ...] = (
    "bucket_start_ms",
    "project_name",
    "provider_id",
    "model_id",
    "role",
    "agent",
    "tool_id",
    "session_count",
    "message_count",
    "input_tokens",
    "output_tokens",
    "reasoning_tokens",
    "cache_read_tokens",
    "cache_write_tokens",
    "duration_ms",
    "cost_usd",
    "net_code_lines",
    "file_count",
    "last_event_ms",
)

# (provider, model, role, agent, tool); the project is left out because it can
# change when a session's project root is resolved later.
DimensionKey = tuple[str, str, str, str, str]
AffectedBuckets = dict[Granularity, set[tuple[int, DimensionKey]]]
BucketFilter = Callable[[Granularity, int, StatDimensions], bool]


@dataclass(frozen=True)
class _RollupEvent:
    event_id: str
    session_id: str
    created_at_ms: int
    dimensions: StatDimensions
    input_tokens: int
    output_tokens: int
    reasoning_tokens: int
    cache_read_tokens: int
    cache_write_tokens: int
    duration_ms: int
    cost_usd: float
    net_code_lines: int
    file_count: int


@dataclass
class _BucketAccumulator:
    bucket_end_ms: int
    session_ids: set[str] = field(default_factory=set)
    message_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    duration_ms: int = 0
    cost_usd: float = 0.0
    net_code_lines: int = 0
    file_count: int = 0
    last_event_ms: int = 0

    def add(self, event: _RollupEvent) -> None:
        self.session_ids.add(event.session_id)
        self.message_count += 1
        self.input_tokens += event.input_tokens
        self.output_tokens += event.output_tokens
        self.reasoning_tokens += event.reasoning_tokens
        self.cache_read_tokens += event.cache_read_tokens
        self.cache_write_tokens += event.cache_write_tokens
        self.duration_ms += event.duration_ms
        self.cost_usd += event.cost_usd
        self.net_code_lines += event.net_code_lines
        self.file_count += event.file_count
        self.last_event_ms = max(self.last_event_ms, event.created_at_ms)

    def to_row(self, bucket_start_ms: int, dimensions: StatDimensions) -> StatBucketRow:
        return StatBucketRow(
            bucket_start_ms=bucket_start_ms,
            dimensions=dimensions,
            session_count=len(self.session_ids),
            message_count=self.message_count,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            reasoning_tokens=self.reasoning_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cache_write_tokens=self.cache_write_tokens,
            duration_ms=self.duration_ms,
            cost_usd=self.cost_usd,
            net_code_lines=self.net_code_lines,
            file_count=self.file_count,
            last_event_ms=self.last_event_ms,
        )


class _RollupBuilder:
    """Accumulates time-ordered events and releases buckets once they are closed."""

    def __init__(self, granularities: Iterable[Granularity], accept: BucketFilter | None = None) -> None:
        self._open: dict[Granularity, dict[tuple[int, StatDimensions], _BucketAccumulator]] = {
            granularity: {} for granularity in granularities
        }
        self._accept = accept

    def add(self, event: _RollupEvent) -> None:
        for granularity, accumulators in self._open.items():
            bucket_start = truncate(granularity, event.created_at_ms)
            if self._accept is not None and not self._accept(granularity, bucket_start, event.dimensions):
                continue
            key = (bucket_start, event.dimensions)
            accumulator = accumulators.get(key)
            if accumulator is None:
                accumulator = _BucketAccumulator(bucket_end_ms=next_bucket_start(granularity, bucket_start))
                accumulators[key] = accumulator
            accumulator.add(event)

    def drain_closed(self, scanned_up_to_ms: int) -> dict[Granularity, list[StatBucketRow]]:
        """Release buckets that no event at or after `scanned_up_to_ms` can reach."""
        return self._drain(lambda accumulator: accumulator.bucket_end_ms <= scanned_up_to_ms)

    def drain_all(self) -> dict[Granularity, list[StatBucketRow]]:
        return self._drain(lambda _accumulator: True)

    def _drain(self, is_closed: Callable[[_BucketAccumulator], bool]) -> dict[Granularity, list[StatBucketRow]]:
        drained: dict[Granularity, list[StatBucketRow]] = {}
        for granularity, accumulators in self._open.items():
            closed_keys = [key for key, accumulator in accumulators.items() if is_closed(accumulator)]
            drained[granularity] = [
                accumulators.pop(key).to_row(bucket_start_ms=key[0], dimensions=key[1]) for key in closed_keys
            ]
        return drained


class RollupEngine:
    """Maintains the three bucketed aggregate tables."""

    def __init__(self, database: UsageDatabase, batch_size: int = 5000) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._database = database
        self._batch_size = batch_size

    def rebuild_all(self, batch_size: int | None = None) -> RollupCounters:
        """Recompute every row of all three tables from the full event set."""
        page_size = batch_size if batch_size is not None else self._batch_size
        if page_size <= 0:
            raise ValueError("batch_size must be positive")

        counters = RollupCounters()
        builder = _RollupBuilder(GRANULARITIES)
        with self._database.transaction():
            for granularity in GRANULARITIES:
                _ = self._database.execute(f"DELETE FROM {granularity.table_name}")
            for page in self._iter_event_pages(span=None, page_size=page_size):
                counters.pages_scanned += 1
                counters.events_scanned += len(page)
                for event in page:
                    builder.add(event)
                self._write(builder.drain_closed(page[-1].created_at_ms), counters)
            self._write(builder.drain_all(), counters)

        LOGGER.info(
            "Rebuilt rollups from %d events in %d pages (%s).",
            counters.events_scanned,
            counters.pages_scanned,
            _format_written(counters),
        )
        return counters

    def recalculate_affected(self, session_ids: Iterable[str]) -> RollupCounters:
        """Recompute the buckets touched by the named sessions' events."""
        affected = self.affected_buckets(session_ids)
        return self.recalculate_buckets(affected)

    def affected_buckets(self, session_ids: Iterable[str]) -> AffectedBuckets:
        """Return, per granularity, the (bucket start, dimension key) pairs the sessions touch."""
        ids = sorted(set(session_ids))
        affected: AffectedBuckets = {granularity: set() for granularity in GRANULARITIES}
        for chunk in chunked(ids, LOOKUP_CHUNK_SIZE):
            rows = self._database.execute(
                f"""
SELECT DISTINCT
    created_at_ms,
    COALESCE(provider_id, '{UNKNOWN_LABEL}'),
    COALESCE(model_id, '{UNKNOWN_LABEL}'),
    COALESCE(role, '{UNKNOWN_LABEL}'),
    COALESCE(agent, '{UNKNOWN_LABEL}'),
    COALESCE(tool_id, '{UNKNOWN_LABEL}')
FROM usage_events
WHERE session_id IN ({placeholders(chunk)})
                """,
                list(chunk),
            ).fetchall()
            for row in rows:
                dimension_key: DimensionKey = (str(row[1]), str(row[2]), str(row[3]), str(row[4]), str(row[5]))
                for granularity in GRANULARITIES:
                    affected[granularity].add((truncate(granularity, int(row[0])), dimension_key))
        return affected

    def recalculate_buckets(self, affected: AffectedBuckets) -> RollupCounters:
        """Delete and recompute exactly the given buckets from the current event set."""
        counters = RollupCounters()
        if not any(affected.values()):
            return counters

        with self._database.transaction():
            for granularity, pairs in affected.items():
                if not pairs:
                    continue
                self._database.executemany(
                    f"""
DELETE FROM {granularity.table_name}
WHERE bucket_start_ms = ?
  AND provider_id = ?
  AND model_id = ?
  AND role = ?
  AND agent = ?
  AND tool_id = ?
                    """,
                    [[bucket_start, *dimension_key] for bucket_start, dimension_key in sorted(pairs)],
                )

                spans = merge_bucket_spans(granularity, (bucket_start for bucket_start, _ in pairs))
                for span in spans:
                    builder = _RollupBuilder((granularity,), accept=_accept_pairs(pairs))
                    for page in self._iter_event_pages(span=span, page_size=self._batch_size):
                        counters.pages_scanned += 1
                        counters.events_scanned += len(page)
                        for event in page:
                            builder.add(event)
                        self._write(builder.drain_closed(page[-1].created_at_ms), counters)
                    self._write(builder.drain_all(), counters)
                LOGGER.info(
                    "Recalculated %d %s buckets across %d spans.",
                    len(pairs),
                    granularity.value,
                    len(spans),
                )
        return counters

    def fetch_rows(
        self,
        granularity: Granularity,
        since_ms: int | None = None,
        until_ms: int | None = None,
    ) -> list[StatBucketRow]:
        """Return stored rows of one granularity ordered by bucket and dimensions."""
        clauses: list[str] = []
        parameters: list[Any] = []
        if since_ms is not None:
            clauses.append("bucket_start_ms >= ?")
            parameters.append(since_ms)
        if until_ms is not None:
            clauses.append("bucket_start_ms < ?")
            parameters.append(until_ms)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._database.execute(
            f"""
SELECT {", ".join(STAT_COLUMNS)}
FROM {granularity.table_name}
{where}
ORDER BY bucket_start_ms, project_name, provider_id, model_id, role, agent, tool_id
            """,
            parameters,
        ).fetchall()
        return [row_to_stat(row) for row in rows]

    def _iter_event_pages(
        self,
        span: tuple[int, int] | None,
        page_size: int,
    ) -> Iterator[list[_RollupEvent]]:
        cursor: tuple[int, str] | None = None
        while True:
            clauses: list[str] = []
            parameters: list[Any] = []
            if span is not None:
                clauses.append("e.created_at_ms >= ? AND e.created_at_ms < ?")
                parameters.extend(span)
            if cursor is not None:
                clauses.append("(e.created_at_ms > ? OR (e.created_at_ms = ? AND e.event_id > ?))")
                parameters.extend([cursor[0], cursor[0], cursor[1]])
            where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
            parameters.append(page_size)
            rows = self._database.execute(
                f"""
SELECT
    e.event_id,
    e.session_id,
    e.created_at_ms,
    e.completed_at_ms,
    COALESCE(s.project_name, '{UNKNOWN_LABEL}'),
    COALESCE(e.provider_id, '{UNKNOWN_LABEL}'),
    COALESCE(e.model_id, '{UNKNOWN_LABEL}'),
    COALESCE(e.role, '{UNKNOWN_LABEL}'),
    COALESCE(e.agent, '{UNKNOWN_LABEL}'),
    COALESCE(e.tool_id, '{UNKNOWN_LABEL}'),
    COALESCE(e.input_tokens, 0),
    COALESCE(e.output_tokens, 0),
    COALESCE(e.reasoning_tokens, 0),
    e.cache_read_tokens,
    e.cache_write_tokens,
    e.cost_usd,
    e.summary_additions - e.summary_deletions,
    e.summary_file_count
FROM usage_events e
LEFT JOIN sessions s ON s.session_id = e.session_id
{where}
ORDER BY e.created_at_ms, e.event_id
LIMIT ?
                """,
                parameters,
            ).fetchall()
            if not rows:
                return
            page = [_row_to_rollup_event(row) for row in rows]
            yield page
            if len(rows) < page_size:
                return
            cursor = (page[-1].created_at_ms, page[-1].event_id)

    def _write(self, drained: dict[Granularity, list[StatBucketRow]], counters: RollupCounters) -> None:
        for granularity, rows in drained.items():
            if not rows:
                continue
            self._database.executemany(
                f"""
INSERT INTO {granularity.table_name} ({", ".join(STAT_COLUMNS)})
VALUES ({placeholders(STAT_COLUMNS)})
                """,
                [_stat_to_row(row) for row in rows],
            )
            counters.add_written(granularity, len(rows))


def row_to_stat(row: tuple) -> StatBucketRow:
    """Rebuild a rollup row selected in STAT_COLUMNS order."""
    return StatBucketRow(
        bucket_start_ms=int(row[0]),
        dimensions=StatDimensions(
            project_name=str(row[1]),
            provider_id=str(row[2]),
            model_id=str(row[3]),
            role=str(row[4]),
            agent=str(row[5]),
            tool_id=str(row[6]),
        ),
        session_count=int(row[7]),
        message_count=int(row[8]),
        input_tokens=int(row[9]),
        output_tokens=int(row[10]),
        reasoning_tokens=int(row[11]),
        cache_read_tokens=int(row[12]),
        cache_write_tokens=int(row[13]),
        duration_ms=int(row[14]),
        cost_usd=float(row[15]),
        net_code_lines=int(row[16]),
        file_count=int(row[17]),
        last_event_ms=int(row[18]),
    )


def _stat_to_row(row: StatBucketRow) -> list[Any]:
    dimensions = row.dimensions
    return [
        row.bucket_start_ms,
        dimensions.project_name,
        dimensions.provider_id,
        dimensions.model_id,
        dimensions.role,
        dimensions.agent,
        dimensions.tool_id,
        row.session_count,
        row.message_count,
        row.input_tokens,
        row.output_tokens,
        row.reasoning_tokens,
        row.cache_read_tokens,
        row.cache_write_tokens,
        row.duration_ms,
        row.cost_usd,
        row.net_code_lines,
        row.file_count,
        row.last_event_ms,
    ]


def _row_to_rollup_event(row: tuple) -> _RollupEvent:
    created_at_ms = int(row[2])
    completed_at_ms = row[3]
    return _RollupEvent(
        event_id=str(row[0]),
        session_id=str(row[1]),
        created_at_ms=created_at_ms,
        dimensions=StatDimensions(
            project_name=str(row[4]),
            provider_id=str(row[5]),
            model_id=str(row[6]),
            role=str(row[7]),
            agent=str(row[8]),
            tool_id=str(row[9]),
        ),
        input_tokens=int(row[10]),
        output_tokens=int(row[11]),
        reasoning_tokens=int(row[12]),
        cache_read_tokens=int(row[13]),
        cache_write_tokens=int(row[14]),
        duration_ms=int(completed_at_ms) - created_at_ms if completed_at_ms is not None else 0,
        cost_usd=float(row[15]),
        net_code_lines=int(row[16]),
        file_count=int(row[17]),
    )


def _accept_pairs(pairs: set[tuple[int, DimensionKey]]) -> BucketFilter:
    def accept(_granularity: Granularity, bucket_start: int, dimensions: StatDimensions) -> bool:
        return (bucket_start, dimensions.without_project) in pairs

    return accept


def _format_written(counters: RollupCounters) -> str:
    return ", ".join(
        f"{granularity.value}={counters.rows_written.get(granularity, 0)}" for granularity in GRANULARITIES
    )

"""Typed schemas for derived session and rollup rows."""

from __future__ import annotations

from dataclasses import dataclass, field

from .buckets import Granularity

UNKNOWN_LABEL = "unknown"


@dataclass(frozen=True)
class SessionSummary:
    """One row persisted in sessions."""

    session_id: str
    tool_id: str
    first_event_ms: int
    last_event_ms: int
    user_message_count: int
    agent_message_count: int
    input_tokens: int
    output_tokens: int
    reasoning_tokens: int
    cache_read_tokens: int
    cache_write_tokens: int
    cost_usd: float
    total_additions: int
    total_deletions: int
    total_file_count: int
    total_edits: int
    is_orphan: bool
    project_name: str | None
    finish_reason: str | None


@dataclass(frozen=True)
class StatDimensions:
    """Grouping tuple of one rollup row, excluding the bucket start."""

    project_name: str
    provider_id: str
    model_id: str
    role: str
    agent: str
    tool_id: str

    @property
    def without_project(self) -> tuple[str, str, str, str, str]:
        return (self.provider_id, self.model_id, self.role, self.agent, self.tool_id)


@dataclass(frozen=True)
class StatBucketRow:
    """One row persisted in hourly_stats, daily_stats or monthly_stats."""

    bucket_start_ms: int
    dimensions: StatDimensions
    session_count: int
    message_count: int
    input_tokens: int
    output_tokens: int
    reasoning_tokens: int
    cache_read_tokens: int
    cache_write_tokens: int
    duration_ms: int
    cost_usd: float
    net_code_lines: int
    file_count: int
    last_event_ms: int


@dataclass
class RollupCounters:
    """Counters emitted by rollup maintenance."""

    events_scanned: int = 0
    rows_written: dict[Granularity, int] = field(default_factory=dict)
    pages_scanned: int = 0

    def add_written(self, granularity: Granularity, count: int) -> None:
        """Accumulate written rows for one granularity."""
        self.rows_written[granularity] = self.rows_written.get(granularity, 0) + count

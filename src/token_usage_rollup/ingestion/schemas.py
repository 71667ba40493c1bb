"""Typed schemas used by the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


@dataclass(frozen=True)
class CodeDiffSummary:
    """Code-diff summary attached to one message."""

    title: str | None = None
    additions: int = 0
    deletions: int = 0
    file_count: int = 0
    files: tuple[str, ...] = ()


@dataclass(frozen=True)
class UsageEvent:
    """One canonical usage event persisted in usage_events."""

    event_id: str
    session_id: str
    role: str
    created_at_ms: int
    tool_id: str
    completed_at_ms: int | None = None
    provider_id: str | None = None
    model_id: str | None = None
    agent: str | None = None
    mode: str | None = None
    variant: str | None = None
    project_root: str | None = None
    project_cwd: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    reasoning_tokens: int | None = None
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost_usd: float = 0.0
    summary: CodeDiffSummary | None = None
    finish_reason: str | None = None


class SourceStatus(Enum):
    """Change classification of one tracked source."""

    NEW = "new"
    UNCHANGED = "unchanged"
    MODIFIED = "modified"
    UNREADABLE = "unreadable"


@dataclass(frozen=True)
class SourceMetadata:
    """One row persisted in source_metadata."""

    source_key: str
    tool_id: str
    content_hash: str
    watermark: str | None
    last_synced_at_ms: int
    event_count: int
    first_event_ms: int | None
    last_event_ms: int | None
    source_exists: bool = True


@dataclass(frozen=True)
class SourceClassification:
    """Result of comparing a fresh fingerprint against stored metadata."""

    status: SourceStatus
    fingerprint: str | None = None
    previous: SourceMetadata | None = None
    error: str | None = None


@dataclass(frozen=True)
class ParseResult:
    """Canonical events parsed from one source."""

    events: list[UsageEvent]
    affected_session_ids: frozenset[str]
    watermark: str | None = None

    @classmethod
    def from_events(cls, events: list[UsageEvent], watermark: str | None = None) -> ParseResult:
        return cls(
            events=events,
            affected_session_ids=frozenset(event.session_id for event in events),
            watermark=watermark,
        )


@dataclass(frozen=True)
class SourceError:
    """One per-source failure collected into a progress report."""

    source_key: str
    kind: str
    message: str


class OutcomeStatus(Enum):
    """What happened to one source during a pass."""

    IMPORTED = "imported"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class SourceOutcome:
    """Result of ingesting one source."""

    source_key: str
    status: OutcomeStatus
    events_parsed: int = 0
    events_inserted: int = 0
    affected_session_ids: frozenset[str] = frozenset()
    error: SourceError | None = None


@dataclass
class SyncProgress:
    """Aggregate counters emitted by a directory or file-list sync."""

    tool_id: str
    total_sources: int = 0
    imported_sources: int = 0
    skipped_sources: int = 0
    failed_sources: int = 0
    events_inserted: int = 0
    sessions_affected: int = 0
    sources_marked_missing: int = 0
    imported_paths: list[str] = field(default_factory=list)
    skipped_paths: list[str] = field(default_factory=list)
    errors: list[SourceError] = field(default_factory=list)

    def record(self, outcome: SourceOutcome) -> None:
        """Fold one source outcome into the totals."""
        self.total_sources += 1
        if outcome.status is OutcomeStatus.IMPORTED:
            self.imported_sources += 1
            self.events_inserted += outcome.events_inserted
            self.sessions_affected += len(outcome.affected_session_ids)
            self.imported_paths.append(outcome.source_key)
        elif outcome.status is OutcomeStatus.SKIPPED:
            self.skipped_sources += 1
            self.skipped_paths.append(outcome.source_key)
        else:
            self.failed_sources += 1
            if outcome.error is not None:
                self.errors.append(outcome.error)

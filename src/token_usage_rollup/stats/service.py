"""Stats aggregation over rollup rows for terminal reports."""

from __future__ import annotations

from collections import defaultdict

from ..aggregation.buckets import Granularity, ms_to_datetime
from .repository import StatsRepository
from .schemas import BucketUsageRow, RollupUsageReport, UsageStats

BUCKET_LABEL_FORMATS: dict[Granularity, str] = {
    Granularity.HOURLY: "%Y-%m-%d %H:00",
    Granularity.DAILY: "%Y-%m-%d",
    Granularity.MONTHLY: "%Y-%m",
}


class StatsService:
    """Builds per-bucket and overall usage reports from one rollup table."""

    def __init__(self, repository: StatsRepository, granularity: Granularity, since_ms: int | None = None) -> None:
        self._repository = repository
        self._granularity = granularity
        self._since_ms = since_ms

    def collect(self) -> RollupUsageReport:
        """Load rollup rows and fold them into a report."""
        rows = self._repository.fetch_bucket_usage(self._granularity, since_ms=self._since_ms)
        return build_report(self._granularity, rows)


def build_report(granularity: Granularity, rows: list[BucketUsageRow]) -> RollupUsageReport:
    """Fold rollup rows into per-bucket and per-model usage."""
    usage_by_bucket: defaultdict[tuple[str, str, str], UsageStats] = defaultdict(UsageStats)
    overall_usage: defaultdict[tuple[str, str], UsageStats] = defaultdict(UsageStats)
    total_messages = 0
    for row in rows:
        stats = UsageStats(
            input_tokens=row.input_tokens,
            output_tokens=row.output_tokens,
            reasoning_tokens=row.reasoning_tokens,
            cache_read_tokens=row.cache_read_tokens,
            cache_write_tokens=row.cache_write_tokens,
            count=row.message_count,
            cost=row.cost_usd,
            net_code_lines=row.net_code_lines,
        )
        label = format_bucket(granularity, row.bucket_start_ms)
        usage_by_bucket[(label, row.provider_id, row.model_id)] += stats
        overall_usage[(row.provider_id, row.model_id)] += stats
        total_messages += row.message_count
    return RollupUsageReport(
        granularity=granularity,
        usage_by_bucket=dict(usage_by_bucket),
        overall_usage=dict(overall_usage),
        total_messages=total_messages,
    )


def format_bucket(granularity: Granularity, bucket_start_ms: int) -> str:
    """Render a bucket start as a UTC label."""
    return ms_to_datetime(bucket_start_ms).strftime(BUCKET_LABEL_FORMATS[granularity])

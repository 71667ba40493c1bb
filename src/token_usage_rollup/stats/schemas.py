"""Typed schemas used by the rollup stats pipeline."""

from __future__ import annotations

from dataclasses import dataclass

from ..aggregation.buckets import Granularity


@dataclass(frozen=True)
class BucketUsageRow:
    """One (bucket, provider, model) usage row summed over the other dimensions."""

    bucket_start_ms: int
    provider_id: str
    model_id: str
    message_count: int
    input_tokens: int
    output_tokens: int
    reasoning_tokens: int
    cache_read_tokens: int
    cache_write_tokens: int
    cost_usd: float
    net_code_lines: int


@dataclass
class UsageStats:
    """Accumulates token usage and cost statistics."""

    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    count: int = 0
    cost: float = 0.0
    net_code_lines: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.reasoning_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
        )

    def __iadd__(self, other: "UsageStats") -> "UsageStats":
        """Mutate this object by adding stats in-place."""
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.reasoning_tokens += other.reasoning_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_write_tokens += other.cache_write_tokens
        self.count += other.count
        self.cost += other.cost
        self.net_code_lines += other.net_code_lines
        return self


@dataclass(frozen=True)
class RollupUsageReport:
    """Usage per bucket and model plus overall totals per model."""

    granularity: Granularity
    usage_by_bucket: dict[tuple[str, str, str], UsageStats]
    overall_usage: dict[tuple[str, str], UsageStats]
    total_messages: int

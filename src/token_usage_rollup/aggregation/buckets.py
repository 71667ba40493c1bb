"""Pure UTC bucket truncation for hourly, daily and monthly rollups."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from enum import Enum

HOUR_MS = 3_600_000
DAY_MS = 86_400_000
# Display estimate only. Monthly buckets follow calendar months.
APPROXIMATE_MONTH_MS = 30 * DAY_MS

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_ONE_MS = timedelta(milliseconds=1)


class Granularity(Enum):
    """Rollup bucket size."""

    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"

    @property
    def table_name(self) -> str:
        return f"{self.value}_stats"


GRANULARITIES: tuple[Granularity, ...] = (Granularity.HOURLY, Granularity.DAILY, Granularity.MONTHLY)


def truncate_hour(timestamp_ms: int) -> int:
    """Floor to the start of the UTC hour."""
    return (timestamp_ms // HOUR_MS) * HOUR_MS


def truncate_day(timestamp_ms: int) -> int:
    """Floor to the start of the UTC calendar day."""
    return (timestamp_ms // DAY_MS) * DAY_MS


def truncate_month(timestamp_ms: int) -> int:
    """Floor to the first day of the UTC calendar month."""
    moment = ms_to_datetime(timestamp_ms)
    return datetime_to_ms(datetime(moment.year, moment.month, 1, tzinfo=UTC))


def truncate(granularity: Granularity, timestamp_ms: int) -> int:
    """Return the bucket start containing `timestamp_ms`."""
    if granularity is Granularity.HOURLY:
        return truncate_hour(timestamp_ms)
    if granularity is Granularity.DAILY:
        return truncate_day(timestamp_ms)
    return truncate_month(timestamp_ms)


def next_bucket_start(granularity: Granularity, bucket_start_ms: int) -> int:
    """Return the start of the bucket following the one at `bucket_start_ms`."""
    if granularity is Granularity.HOURLY:
        return bucket_start_ms + HOUR_MS
    if granularity is Granularity.DAILY:
        return bucket_start_ms + DAY_MS
    moment = ms_to_datetime(bucket_start_ms)
    if moment.month == 12:
        following = datetime(moment.year + 1, 1, 1, tzinfo=UTC)
    else:
        following = datetime(moment.year, moment.month + 1, 1, tzinfo=UTC)
    return datetime_to_ms(following)


def merge_bucket_spans(granularity: Granularity, bucket_starts: Iterable[int]) -> list[tuple[int, int]]:
    """Merge bucket starts into sorted, contiguous half-open `[start, end)` spans."""
    spans: list[tuple[int, int]] = []
    for bucket_start in sorted(set(bucket_starts)):
        bucket_end = next_bucket_start(granularity, bucket_start)
        if spans and spans[-1][1] == bucket_start:
            spans[-1] = (spans[-1][0], bucket_end)
        else:
            spans.append((bucket_start, bucket_end))
    return spans


def ms_to_datetime(timestamp_ms: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime without float rounding."""
    return _EPOCH + timedelta(milliseconds=timestamp_ms)


def datetime_to_ms(moment: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    return (moment - _EPOCH) // _ONE_MS

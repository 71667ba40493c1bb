"""Read-only DuckDB repository over the rollup tables."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import duckdb

from ..aggregation.buckets import Granularity
from .schemas import BucketUsageRow


class StatsRepositoryError(RuntimeError):
    """Raised when stats queries cannot be executed."""


class StatsRepository:
    """Read-only repository for hourly, daily and monthly rollups."""

    def __init__(self, database_path: Path) -> None:
        try:
            self._connection = duckdb.connect(str(database_path), read_only=True)
        except duckdb.Error as exc:
            raise StatsRepositoryError(f"Failed to open {database_path}: {exc}") from exc

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        self._connection.close()

    def fetch_bucket_usage(self, granularity: Granularity, since_ms: int | None = None) -> list[BucketUsageRow]:
        """Sum one rollup table per (bucket, provider, model)."""
        where = "WHERE bucket_start_ms >= ?" if since_ms is not None else ""
        parameters: list[Any] = [since_ms] if since_ms is not None else []
        try:
            rows = self._connection.execute(
                f"""
SELECT
    bucket_start_ms,
    provider_id,
    model_id,
    SUM(message_count),
    SUM(input_tokens),
    SUM(output_tokens),
    SUM(reasoning_tokens),
    SUM(cache_read_tokens),
    SUM(cache_write_tokens),
    SUM(cost_usd),
    SUM(net_code_lines)
FROM {granularity.table_name}
{where}
GROUP BY bucket_start_ms, provider_id, model_id
ORDER BY bucket_start_ms, provider_id, model_id
                """,
                parameters,
            ).fetchall()
        except duckdb.Error as exc:
            raise StatsRepositoryError(
                f"Failed to query {granularity.table_name}. Run `token-usage-rollup sync` first."
            ) from exc

        return [
            BucketUsageRow(
                bucket_start_ms=int(row[0]),
                provider_id=str(row[1]),
                model_id=str(row[2]),
                message_count=int(row[3]),
                input_tokens=int(row[4]),
                output_tokens=int(row[5]),
                reasoning_tokens=int(row[6]),
                cache_read_tokens=int(row[7]),
                cache_write_tokens=int(row[8]),
                cost_usd=float(row[9]),
                net_code_lines=int(row[10]),
            )
            for row in rows
        ]

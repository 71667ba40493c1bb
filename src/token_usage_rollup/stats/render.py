"""Rich rendering helpers for rollup usage statistics."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table

from .schemas import RollupUsageReport, UsageStats

TABLE_ROW_STYLES = ["white", "yellow"]


def render_rollup_statistics(report: RollupUsageReport, console: Console) -> None:
    """Render per-bucket and overall usage tables."""
    if report.total_messages == 0:
        console.print("No rollup rows found in the database.")
        return

    bucket_data = sorted(report.usage_by_bucket.items(), key=lambda item: item[0])
    _print_usage_table(
        f"{report.granularity.value.capitalize()} Token Usage",
        bucket_data,
        console,
        show_bucket=True,
    )
    console.print("\n")

    overall_data = sorted(report.overall_usage.items(), key=lambda item: item[0])
    _print_usage_table("Overall Token Usage by Model", overall_data, console, show_bucket=False)


def _print_usage_table(
    title: str,
    data: list[tuple[Any, UsageStats]],
    console: Console,
    show_bucket: bool = False,
) -> None:
    """Render one usage table with totals."""
    table = Table(
        title=title,
        show_footer=True,
        footer_style="bold",
        title_justify="left",
    )

    if show_bucket:
        table.add_column("Bucket", justify="left")
    table.add_column("Provider", footer="Grand Total", justify="left")
    table.add_column("Model", justify="left")
    table.add_column("Messages", footer_style="bold", justify="right")
    table.add_column("Input Tokens", footer_style="bold", justify="right")
    table.add_column("Output Tokens", footer_style="bold", justify="right")
    table.add_column("Reasoning Tokens", footer_style="bold", justify="right")
    table.add_column("Cache Read Tokens", footer_style="bold", justify="right")
    table.add_column("Cache Write Tokens", footer_style="bold", justify="right")
    table.add_column("Net Code Lines", footer_style="bold", justify="right")
    table.add_column("Cost ($)", footer_style="bold", justify="right")
    table.add_column("Total Tokens", footer_style="bold", justify="right")

    total_stats = UsageStats()
    last_bucket: str | None = None
    style_index = 0

    for key, stats in data:
        total_stats += stats

        row_args: list[str] = []
        row_style: str | None = None

        if show_bucket:
            bucket_label, provider_name, model_name = key
            if last_bucket is not None and bucket_label != last_bucket:
                style_index = (style_index + 1) % len(TABLE_ROW_STYLES)
            last_bucket = bucket_label
            row_style = TABLE_ROW_STYLES[style_index]
            row_args.extend([bucket_label, provider_name, model_name])
        else:
            provider_name, model_name = key
            row_args.extend([provider_name, model_name])

        row_args.extend(_stat_cells(stats))
        table.add_row(*row_args, style=row_style)

    col_offset = 1 if show_bucket else 0
    for index, cell in enumerate(_stat_cells(total_stats)):
        table.columns[2 + col_offset + index].footer = cell

    console.print(table)


def _stat_cells(stats: UsageStats) -> list[str]:
    return [
        str(stats.count),
        f"{stats.input_tokens:,}",
        f"{stats.output_tokens:,}",
        f"{stats.reasoning_tokens:,}",
        f"{stats.cache_read_tokens:,}",
        f"{stats.cache_write_tokens:,}",
        f"{stats.net_code_lines:,}",
        f"{stats.cost:,.6f}",
        f"{stats.total_tokens:,}",
    ]

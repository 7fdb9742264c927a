"""Output helpers shared by the CLI commands."""

import re
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

import click
from rich.console import Console
from rich.table import Table

console = Console()

_PREFIX_PATTERN = re.compile(r"^[a-z0-9]*$")


def _echo(symbol: str, message: str, color: str, err: bool = False) -> None:
    click.secho(f"{symbol} {message}", fg=color, err=err)


def echo_success(message: str) -> None:
    _echo("✓", message, "green")


def echo_error(message: str) -> None:
    _echo("✗", message, "red", err=True)


def echo_warning(message: str) -> None:
    _echo("⚠", message, "yellow")


def echo_info(message: str) -> None:
    _echo("ℹ", message, "blue")


def format_duration(seconds: float) -> str:
    """Render a duration as `12.5s`, `3m 4s` or `1h 2m 3s`."""
    if seconds < 60:
        return f"{seconds:.1f}s"

    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {secs}s"


def elapsed_between(start: datetime | None, end: datetime | None) -> str | None:
    """Format the time between two coordinator timestamps, if both are set."""
    if start is None or end is None:
        return None
    return format_duration((end - start).total_seconds())


def print_table(title: str, columns: list[str], rows: Iterable[Iterable[Any]]) -> None:
    """Print rows under the given column headers as a rich table."""
    table = Table(title=title)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*(str(cell) for cell in row))
    console.print(table)


def print_stats(stats: Mapping[str, Any], title: str = "Statistics") -> None:
    """Print a metric/value table; `resources_created` is shown as `Resources Created`."""
    print_table(
        title,
        ["Metric", "Value"],
        ([key.replace("_", " ").title(), value] for key, value in stats.items()),
    )


def validate_prefix(ctx: click.Context, param: click.Parameter, value: str | None) -> str | None:
    """Click callback: destination prefixes must be lowercase letters and digits."""
    if value is not None and not _PREFIX_PATTERN.match(value):
        raise click.BadParameter("must contain only lowercase letters and digits")
    return value

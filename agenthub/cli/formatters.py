"""Rendering helpers shared by the CLI commands."""

from __future__ import annotations

import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table
from rich.text import Text

# status -> (glyph, style); covers subagent states and heartbeat outcomes
_INDICATORS: dict[str, tuple[str, str]] = {
    "running": (">", "green"),
    "replied": ("+", "cyan"),
    "sent": ("+", "cyan"),
    "idle": ("-", "dim"),
    "ok-empty": ("-", "dim"),
    "ok-token": ("-", "dim"),
    "skipped": ("~", "dim"),
    "error": ("!", "yellow"),
    "failed": ("!", "red"),
}


def get_console(no_color: bool = False) -> Console:
    return Console(no_color=no_color)


def status_indicator(status: str) -> Text:
    glyph, style = _INDICATORS.get(status, ("?", "dim"))
    return Text(f"{glyph} ", style=style)


def format_duration(seconds: float) -> str:
    """``45s``, ``2m05s`` or ``2h 00m``."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m{secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    table = Table(*columns, title=title, header_style="bold")
    for row in rows:
        table.add_row(*(cell if isinstance(cell, Text) else str(cell) for cell in row))
    return table


def emit_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str, ensure_ascii=False))

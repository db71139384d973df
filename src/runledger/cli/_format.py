"""Formatting utilities for CLI output.

Aligned tables, value truncation and the JSON envelope shared by every
``--json`` command.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any

from runledger.types import Run

# JSON envelope version, bumped on breaking changes to the JSON structure
SCHEMA_VERSION = 1

DEFAULT_LIMIT = 20
MAX_LINES = 100

# Columns right-aligned by print_table
_NUMERIC_COLUMNS = frozenset({"Seq", "Iter", "Iters", "Checkpoints", "Duration"})


def json_envelope(command: str, data: Any) -> dict[str, Any]:
    """Wrap data in the standard JSON output envelope."""
    return {
        "schema_version": SCHEMA_VERSION,
        "command": command,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }


def print_json(command: str, data: Any) -> None:
    """Print the JSON envelope to stdout."""
    print(json.dumps(json_envelope(command, data), indent=2, default=str))


def run_duration_ms(run: Run) -> float | None:
    """Wall time from start to completion (or cancellation), if both are known."""
    end = run.completed_at or run.cancelled_at
    if run.started_at is None or end is None:
        return None
    return (end - run.started_at).total_seconds() * 1000


def format_duration(ms: float | None) -> str:
    """``42ms``, ``1.5s`` or ``1m01.0s``; an em dash when unknown."""
    if not ms:
        return "—"
    if ms < 1000:
        return f"{ms:.0f}ms"
    minutes, seconds = divmod(ms / 1000, 60)
    if not minutes:
        return f"{seconds:.1f}s"
    return f"{int(minutes)}m{seconds:04.1f}s"


def format_datetime(dt: datetime | None) -> str:
    return "—" if dt is None else f"{dt:%Y-%m-%d %H:%M:%S}"


def format_status(status: str) -> str:
    """Uppercase failures so they stand out in tables."""
    return "FAILED" if status == "failed" else status


def truncate_value(value: Any, max_chars: int = 200) -> str:
    """Render *value* as text (JSON for non-strings), cut to *max_chars*."""
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= max_chars else f"{text[:max_chars]}…"


def print_table(headers: list[str], rows: list[list[str]], indent: int = 2) -> list[str]:
    """Lay *rows* out under *headers* in aligned columns.

    Numeric columns (sequence, iteration counts, durations) are right-aligned.
    Returns the lines; printing is left to the caller.
    """
    if not rows:
        return []

    columns = list(zip(headers, *(row[: len(headers)] for row in rows)))
    widths = [max(map(len, column)) for column in columns]
    right = [header in _NUMERIC_COLUMNS for header in headers]

    def render(cells: list[str], align: bool) -> str:
        parts = [
            cell.rjust(width) if align and flush_right else cell.ljust(width)
            for cell, width, flush_right in zip(cells, widths, right)
        ]
        return " " * indent + "  ".join(parts)

    lines = [render(headers, align=False), " " * indent + "  ".join("─" * w for w in widths)]
    lines.extend(render(row, align=True).rstrip() for row in rows)
    return lines


def print_lines(lines: list[str], max_lines: int = MAX_LINES) -> None:
    """Print lines with a truncation note if there are too many."""
    for line in lines[:max_lines]:
        print(line)
    if len(lines) > max_lines:
        print(f"\n  # ... {len(lines) - max_lines} more lines (use --limit to control)")


def print_ctas(ctas: list[str]) -> None:
    """Print next-step suggestions after command output."""
    print()
    for cta in ctas:
        print(f"  → {cta}")


_SINCE_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def parse_since(since_str: str) -> datetime:
    """Parse a relative time like 30s, 5m, 1h, 7d or 2w into a UTC datetime."""
    match = re.fullmatch(r"(\d+)([smhdw])", since_str.strip())
    if not match:
        raise ValueError(f"Invalid --since value: '{since_str}'. Use e.g. 30s, 5m, 1h, 7d, 2w.")
    seconds = int(match.group(1)) * _SINCE_UNITS[match.group(2)]
    return datetime.now(timezone.utc) - timedelta(seconds=seconds)

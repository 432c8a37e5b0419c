"""Sorting and rendering of snapshots for pystop."""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import asdict
from enum import Enum
from typing import Any

from pystop.filters import Expression, FilterError, filter_processes
from pystop.models import ProcessSnapshot
from pystop.monitor import SystemSnapshot

logger = logging.getLogger(__name__)

DEFAULT_TOP_N = 20

CSV_COLUMNS = [
    "timestamp",
    "cpu_usage",
    "memory_total",
    "memory_used",
    "memory_percent_system",
    "pid",
    "name",
    "username",
    "status",
    "cpu_percent",
    "memory_percent",
    "memory_rss",
    "threads",
    "nice",
    "command_line",
]


class SortKey(Enum):
    """Sort keys for process lists."""

    CPU = "cpu"
    MEM = "mem"
    PID = "pid"
    NAME = "name"
    USER = "user"

    @classmethod
    def from_name(cls, name: str) -> SortKey:
        """Resolve a sort key name; ``memory`` is accepted for ``mem``."""
        name = name.lower()
        if name == "memory":
            name = "mem"
        return cls(name)

    @property
    def descending(self) -> bool:
        return self in (SortKey.CPU, SortKey.MEM)


_SORT_FIELDS = {
    SortKey.CPU: lambda p: p.cpu_percent,
    SortKey.MEM: lambda p: p.memory_percent,
    SortKey.PID: lambda p: p.pid,
    SortKey.NAME: lambda p: p.name.lower(),
    SortKey.USER: lambda p: p.username.lower(),
}


def resolve_sort_key(sort_by: SortKey | str) -> SortKey:
    """Resolve a sort key, falling back to CPU for unknown names."""
    if isinstance(sort_by, SortKey):
        return sort_by
    try:
        return SortKey.from_name(sort_by)
    except ValueError:
        logger.warning(
            "Unknown sort field '%s', using 'cpu'. Valid: cpu, mem, pid, name, user",
            sort_by,
        )
        return SortKey.CPU


def sort_processes(
    processes: list[ProcessSnapshot],
    sort_by: SortKey | str = SortKey.CPU,
) -> list[ProcessSnapshot]:
    """Return processes sorted by the given key (CPU and MEM descending)."""
    key = resolve_sort_key(sort_by)
    return sorted(processes, key=_SORT_FIELDS[key], reverse=key.descending)


def select_processes(
    processes: list[ProcessSnapshot],
    expression: Expression | None = None,
    sort_by: SortKey | str = SortKey.CPU,
    top_n: int = DEFAULT_TOP_N,
) -> list[ProcessSnapshot]:
    """Filter, sort and truncate a process list."""
    selected = sort_processes(filter_processes(expression, processes), sort_by)
    return selected[: max(top_n, 0)]


def format_bytes(size: float) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{int(size):5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def format_uptime(seconds: float) -> str:
    """Format an uptime in seconds as ``[N days, ]HH:MM:SS``."""
    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    clock = f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{days} days, {clock}" if days > 0 else clock


def render_text(
    snapshot: SystemSnapshot,
    filter_text: str | None = None,
    sort_key: SortKey | str = SortKey.CPU,
    version: str = "",
) -> str:
    """Render a snapshot as a human-readable report."""
    key = resolve_sort_key(sort_key)
    mb = 1024 * 1024
    lines = [
        f"pystop v{version}" if version else "pystop",
        "",
        "System:",
        f"  CPU: {snapshot.cpu_percent:.1f}%",
        f"  Memory: {snapshot.memory_percent:.1f}% "
        f"({snapshot.memory_used // mb} / {snapshot.memory_total // mb} MB)",
        "",
    ]
    if filter_text:
        lines.append(f"Filter: {filter_text}")
    lines.append(f"Sort: {key.value} | Showing: {len(snapshot.processes)} processes")
    lines.append("")
    lines.append(f"{'PID':<8} {'NAME':<20} {'CPU%':>8} {'MEM%':>8} {'USER':<10}")
    lines.append("-" * 70)
    for proc in snapshot.processes:
        lines.append(
            f"{proc.pid:<8} {proc.name[:20]:<20} {proc.cpu_percent:>7.1f}% "
            f"{proc.memory_percent:>7.1f}% {proc.username[:10]:<10}"
        )
    return "\n".join(lines)


def snapshot_to_dict(snapshot: SystemSnapshot) -> dict[str, Any]:
    """Convert a snapshot into JSON-compatible data."""
    return {
        "timestamp": snapshot.timestamp,
        "system": {
            "cpu_usage": snapshot.cpu_percent,
            "cpu_percent_per_core": list(snapshot.cpu_percent_per_core),
            "memory_total": snapshot.memory_total,
            "memory_used": snapshot.memory_used,
            "memory_percent": snapshot.memory_percent,
            "swap_total": snapshot.swap_total,
            "swap_used": snapshot.swap_used,
            "swap_percent": snapshot.swap_percent,
            "load_avg": list(snapshot.load_avg),
            "uptime_seconds": snapshot.uptime_seconds,
        },
        "processes": [asdict(proc) for proc in snapshot.processes],
    }


def render_json(snapshot: SystemSnapshot, pretty: bool = True) -> str:
    """Render a snapshot as JSON; ``pretty=False`` yields a single line."""
    if pretty:
        return json.dumps(snapshot_to_dict(snapshot), indent=2)
    return json.dumps(snapshot_to_dict(snapshot), separators=(",", ":"))


def _csv_line(values: list[Any]) -> str:
    buffer = io.StringIO()
    csv.writer(buffer, lineterminator="\n").writerow(values)
    return buffer.getvalue().rstrip("\n")


def csv_header() -> str:
    """CSV header line matching :func:`csv_rows`."""
    return _csv_line(CSV_COLUMNS)


def csv_rows(snapshot: SystemSnapshot) -> list[str]:
    """Render one CSV line per process, prefixed with the system columns."""
    system = [
        snapshot.timestamp,
        f"{snapshot.cpu_percent:.2f}",
        snapshot.memory_total,
        snapshot.memory_used,
        f"{snapshot.memory_percent:.2f}",
    ]
    return [
        _csv_line(
            system
            + [
                proc.pid,
                proc.name,
                proc.username,
                proc.status,
                f"{proc.cpu_percent:.2f}",
                f"{proc.memory_percent:.2f}",
                proc.memory_rss,
                proc.threads,
                proc.nice,
                proc.command_line,
            ]
        )
        for proc in snapshot.processes
    ]


def error_payload(error: FilterError, expression: str) -> dict[str, Any]:
    """Structured description of a filter error for JSON output."""
    payload: dict[str, Any] = {
        "error": "FilterError",
        "kind": error.kind,
        "message": str(error),
        "expression": expression,
    }
    payload.update(error.details())
    return payload

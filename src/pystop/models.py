"""Data models for pystop."""

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class ProcessSnapshot:
    """
    Immutable snapshot of a single process.

    This is the record filter expressions are evaluated against: it exposes
    ``pid``, ``name``, ``username``, ``cpu_percent`` and ``memory_percent``.
    """

    pid: int
    name: str
    username: str
    status: str  # 'running', 'sleeping', 'zombie', etc.
    cpu_percent: float  # 0.0 - 100.0 * core_count
    memory_percent: float
    memory_rss: int  # Bytes
    threads: int
    nice: int
    command_line: str

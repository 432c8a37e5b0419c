"""Process and system metrics collection for pystop."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from queue import Queue

import psutil

from pystop.filters import Expression, filter_processes
from pystop.models import ProcessSnapshot

logger = logging.getLogger(__name__)

# Attributes fetched for every process in one pass
PROCESS_ATTRS = [
    "pid",
    "name",
    "username",
    "status",
    "cpu_percent",
    "memory_percent",
    "memory_info",
    "num_threads",
    "nice",
    "cmdline",
]

MIN_POLL_RATE = 0.1


@dataclass(slots=True)
class SystemSnapshot:
    """Snapshot of overall system state and the (filtered) process list."""

    timestamp: str
    cpu_percent_per_core: list[float]
    memory_total: int
    memory_used: int
    memory_percent: float
    swap_total: int
    swap_used: int
    swap_percent: float
    load_avg: tuple[float, float, float]
    uptime_seconds: float
    processes: list[ProcessSnapshot]

    @property
    def cpu_percent(self) -> float:
        """Average CPU usage across all cores."""
        if not self.cpu_percent_per_core:
            return 0.0
        return sum(self.cpu_percent_per_core) / len(self.cpu_percent_per_core)


def collect_processes() -> list[ProcessSnapshot]:
    """
    Collect snapshots of all running processes.

    Processes that exit mid-poll, deny access or are zombies are skipped.
    """
    processes: list[ProcessSnapshot] = []

    for proc in psutil.process_iter(attrs=PROCESS_ATTRS):
        try:
            with proc.oneshot():
                info = proc.info

                cmdline = info.get("cmdline") or []
                command_line = " ".join(cmdline) if cmdline else info.get("name") or ""

                mem_info = info.get("memory_info")
                memory_rss = mem_info.rss if mem_info else 0

                processes.append(
                    ProcessSnapshot(
                        pid=info.get("pid", 0),
                        name=info.get("name") or "",
                        username=info.get("username") or "",
                        status=info.get("status") or "?",
                        cpu_percent=info.get("cpu_percent") or 0.0,
                        memory_percent=info.get("memory_percent") or 0.0,
                        memory_rss=memory_rss,
                        threads=info.get("num_threads") or 0,
                        nice=info.get("nice") or 0,
                        command_line=command_line,
                    )
                )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    return processes


def build_snapshot(
    processes: list[ProcessSnapshot],
    cpu_percents: list[float],
) -> SystemSnapshot:
    """Combine a process list with the current system-wide counters."""
    mem = psutil.virtual_memory()
    swap = psutil.swap_memory()

    return SystemSnapshot(
        timestamp=datetime.now(timezone.utc).isoformat(),
        cpu_percent_per_core=cpu_percents,
        memory_total=mem.total,
        memory_used=mem.used,
        memory_percent=mem.percent,
        swap_total=swap.total,
        swap_used=swap.used,
        swap_percent=swap.percent,
        load_avg=psutil.getloadavg(),
        uptime_seconds=time.time() - psutil.boot_time(),
        processes=processes,
    )


def collect_snapshot(
    process_filter: Expression | None = None,
    warmup: float = 0.2,
) -> SystemSnapshot:
    """
    Collect a single snapshot, keeping only processes matching the filter.

    psutil reports 0.0 on the first CPU reading of a process, so counters are
    primed and sampled again after ``warmup`` seconds.
    """
    psutil.cpu_percent(percpu=True)
    for proc in psutil.process_iter():
        try:
            proc.cpu_percent(None)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    if warmup > 0:
        time.sleep(warmup)

    cpu_percents = psutil.cpu_percent(percpu=True)
    processes = filter_processes(process_filter, collect_processes())
    return build_snapshot(processes, cpu_percents)


class SystemMonitor:
    """
    System monitor that collects process and system data using psutil.

    Runs in a separate daemon thread and pushes updates to a thread-safe Queue.
    When ``process_filter`` is set, only matching processes are included in
    the snapshots it produces.
    """

    def __init__(
        self,
        update_queue: Queue[SystemSnapshot],
        poll_rate: float = 2.0,
        process_filter: Expression | None = None,
    ) -> None:
        """
        Initialize the SystemMonitor.

        Args:
            update_queue: Thread-safe queue to push updates to.
            poll_rate: How often to poll the system (in seconds). Default 2.0s.
            process_filter: Parsed filter expression applied to each poll.
        """
        self._queue = update_queue
        self._poll_rate = max(MIN_POLL_RATE, poll_rate)
        self._process_filter = process_filter
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._cpu_history: deque[list[float]] = deque(maxlen=60)
        # First call returns 0.0
        psutil.cpu_percent(percpu=True)

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(MIN_POLL_RATE, value)

    @property
    def process_filter(self) -> Expression | None:
        """Filter applied to collected processes, or None for all processes."""
        return self._process_filter

    @process_filter.setter
    def process_filter(self, value: Expression | None) -> None:
        # Expressions are immutable, so swapping the reference is enough
        self._process_filter = value

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="SystemMonitor",
        )
        self._thread.start()
        logger.debug("Monitor started (poll rate %.2fs)", self._poll_rate)

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitoring thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.debug("Monitor stopped")

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                self._queue.put(self._collect_snapshot())
            except Exception:
                logger.exception("Failed to collect system snapshot")

            self._stop_event.wait(timeout=self._poll_rate)

    def _collect_snapshot(self) -> SystemSnapshot:
        """Collect a snapshot of the current system state."""
        cpu_percents = psutil.cpu_percent(percpu=True)
        self._cpu_history.append(cpu_percents)

        processes = filter_processes(self._process_filter, self._collect_processes())
        return build_snapshot(processes, cpu_percents)

    def _collect_processes(self) -> list[ProcessSnapshot]:
        return collect_processes()

    def get_cpu_history(self) -> list[list[float]]:
        """Get the CPU usage history."""
        return list(self._cpu_history)

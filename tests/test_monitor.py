"""Tests for process collection and the SystemMonitor class."""

import os
from queue import Queue

from pystop.filters import parse_filter
from pystop.models import ProcessSnapshot
from pystop.monitor import (
    SystemMonitor,
    SystemSnapshot,
    collect_processes,
    collect_snapshot,
)


def make_system_snapshot(**overrides) -> SystemSnapshot:
    values = {
        "timestamp": "2024-01-01T00:00:00+00:00",
        "cpu_percent_per_core": [10.0, 20.0, 30.0, 40.0],
        "memory_total": 16 * 1024**3,
        "memory_used": 8 * 1024**3,
        "memory_percent": 50.0,
        "swap_total": 4 * 1024**3,
        "swap_used": 0,
        "swap_percent": 0.0,
        "load_avg": (1.0, 0.5, 0.25),
        "uptime_seconds": 3600.0,
        "processes": [],
    }
    values.update(overrides)
    return SystemSnapshot(**values)


class TestSystemSnapshot:
    """Tests for SystemSnapshot dataclass."""

    def test_system_snapshot_creation(self):
        """Test SystemSnapshot can be created with all fields."""
        snapshot = make_system_snapshot()

        assert snapshot.cpu_percent_per_core == [10.0, 20.0, 30.0, 40.0]
        assert snapshot.memory_percent == 50.0
        assert snapshot.load_avg == (1.0, 0.5, 0.25)

    def test_cpu_percent_is_core_average(self):
        """Test the system CPU figure is the mean of the cores."""
        assert make_system_snapshot().cpu_percent == 25.0
        assert make_system_snapshot(cpu_percent_per_core=[]).cpu_percent == 0.0

    def test_system_snapshot_uses_slots(self):
        """Test SystemSnapshot uses __slots__ for memory efficiency."""
        assert not hasattr(make_system_snapshot(), "__dict__")


class TestCollection:
    """Tests for one-shot collection."""

    def test_collect_processes_returns_snapshots(self):
        """Test collect_processes returns ProcessSnapshots with valid types."""
        processes = collect_processes()

        assert len(processes) > 0
        for proc in processes[:5]:
            assert isinstance(proc, ProcessSnapshot)
            assert isinstance(proc.name, str)
            assert isinstance(proc.username, str)
            assert isinstance(proc.cpu_percent, float)
            assert isinstance(proc.memory_percent, float)
            assert isinstance(proc.memory_rss, int)
            assert isinstance(proc.command_line, str)

    def test_collect_processes_includes_current_process(self):
        """Test the test runner itself is collected."""
        pids = {proc.pid for proc in collect_processes()}

        assert os.getpid() in pids

    def test_collect_snapshot_applies_filter(self):
        """Test collect_snapshot keeps only processes matching the filter."""
        snapshot = collect_snapshot(parse_filter(f"pid == {os.getpid()}"), warmup=0)

        assert [proc.pid for proc in snapshot.processes] == [os.getpid()]
        assert snapshot.memory_total > 0
        assert snapshot.timestamp

    def test_collect_snapshot_without_filter(self):
        """Test collect_snapshot without a filter keeps every process."""
        snapshot = collect_snapshot(warmup=0)

        assert len(snapshot.processes) > 1


class TestSystemMonitor:
    """Tests for SystemMonitor class."""

    def test_monitor_creation(self):
        """Test SystemMonitor can be instantiated."""
        queue: Queue[SystemSnapshot] = Queue()
        monitor = SystemMonitor(queue)

        assert monitor.poll_rate == 2.0
        assert monitor.process_filter is None
        assert not monitor.is_running

    def test_monitor_custom_poll_rate(self):
        """Test SystemMonitor with custom poll rate."""
        queue: Queue[SystemSnapshot] = Queue()
        monitor = SystemMonitor(queue, poll_rate=1.0)

        assert monitor.poll_rate == 1.0

    def test_poll_rate_minimum(self):
        """Test poll rate has a minimum value."""
        queue: Queue[SystemSnapshot] = Queue()
        monitor = SystemMonitor(queue, poll_rate=0.001)
        assert monitor.poll_rate == 0.1

        monitor.poll_rate = 0.01
        assert monitor.poll_rate == 0.1

    def test_monitor_start_stop(self):
        """Test SystemMonitor can be started and stopped."""
        queue: Queue[SystemSnapshot] = Queue()
        monitor = SystemMonitor(queue, poll_rate=0.1)

        monitor.start()
        assert monitor.is_running

        monitor.stop()
        assert not monitor.is_running

    def test_monitor_start_idempotent(self):
        """Test starting an already running monitor is safe."""
        queue: Queue[SystemSnapshot] = Queue()
        monitor = SystemMonitor(queue, poll_rate=0.1)

        monitor.start()
        thread1 = monitor._thread

        monitor.start()
        thread2 = monitor._thread

        assert thread1 is thread2
        monitor.stop()

    def test_daemon_thread(self):
        """Test monitor thread is a daemon thread."""
        queue: Queue[SystemSnapshot] = Queue()
        monitor = SystemMonitor(queue, poll_rate=0.1)

        monitor.start()

        try:
            assert monitor._thread is not None
            assert monitor._thread.daemon is True
            assert monitor._thread.name == "SystemMonitor"
        finally:
            monitor.stop()

    def test_monitor_collects_data(self):
        """Test SystemMonitor collects and queues data."""
        queue: Queue[SystemSnapshot] = Queue()
        monitor = SystemMonitor(queue, poll_rate=0.1)

        monitor.start()

        try:
            snapshot = queue.get(timeout=5.0)
            assert isinstance(snapshot, SystemSnapshot)
            assert len(snapshot.processes) > 0
            assert snapshot.memory_total > 0
        finally:
            monitor.stop()

    def test_monitor_applies_filter(self):
        """Test the monitor only queues processes matching its filter."""
        queue: Queue[SystemSnapshot] = Queue()
        expr = parse_filter(f"pid == {os.getpid()}")
        monitor = SystemMonitor(queue, poll_rate=0.1, process_filter=expr)

        monitor.start()

        try:
            snapshot = queue.get(timeout=5.0)
            assert [proc.pid for proc in snapshot.processes] == [os.getpid()]
        finally:
            monitor.stop()

    def test_monitor_filter_can_be_replaced(self):
        """Test replacing the filter affects subsequent polls."""
        queue: Queue[SystemSnapshot] = Queue()
        monitor = SystemMonitor(queue, poll_rate=0.1, process_filter=parse_filter("pid == 0"))

        monitor.process_filter = parse_filter(f"pid == {os.getpid()}")
        snapshot = monitor._collect_snapshot()

        assert [proc.pid for proc in snapshot.processes] == [os.getpid()]

    def test_monitor_survives_collection_errors(self, monkeypatch):
        """Test the loop keeps running when a poll raises."""
        queue: Queue[SystemSnapshot] = Queue()
        monitor = SystemMonitor(queue, poll_rate=0.1)
        calls = []

        def flaky() -> list[ProcessSnapshot]:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return []

        monkeypatch.setattr(monitor, "_collect_processes", flaky)
        monitor.start()

        try:
            snapshot = queue.get(timeout=5.0)
            assert snapshot.processes == []
            assert len(calls) >= 2
        finally:
            monitor.stop()

    def test_monitor_cpu_history(self):
        """Test CPU history is recorded."""
        queue: Queue[SystemSnapshot] = Queue()
        monitor = SystemMonitor(queue, poll_rate=0.1)

        monitor.start()

        try:
            queue.get(timeout=5.0)
            queue.get(timeout=5.0)

            history = monitor.get_cpu_history()
            assert len(history) >= 1
        finally:
            monitor.stop()

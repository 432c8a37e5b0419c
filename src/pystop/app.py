"""pystop - Interactive Textual process table with filter expressions."""

from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.css.query import NoMatches
from textual.widgets import DataTable, Footer, Input, Static

from pystop.filters import Expression, FilterError, filter_processes, parse_filter
from pystop.models import ProcessSnapshot
from pystop.monitor import SystemMonitor, SystemSnapshot
from pystop.output import SortKey, format_bytes, format_uptime, sort_processes


class HeaderStats(Static):
    """Header widget showing system totals and the active filter."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 4;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._snapshot: SystemSnapshot | None = None
        self._filter_text: str | None = None
        self._shown: int = 0

    def compose(self) -> ComposeResult:
        yield Horizontal(
            Static(self._get_system_info(), id="system-info"),
            Static(self._get_filter_info(), id="filter-info"),
        )

    def update_stats(self, snapshot: SystemSnapshot, shown: int) -> None:
        """Update the statistics from a system snapshot."""
        self._snapshot = snapshot
        self._shown = shown
        self._refresh_display()

    def set_filter_text(self, filter_text: str | None) -> None:
        self._filter_text = filter_text
        self._refresh_display()

    def _refresh_display(self) -> None:
        try:
            system_info = self.query_one("#system-info", Static)
            filter_info = self.query_one("#filter-info", Static)
        except NoMatches:
            return  # Not mounted yet
        system_info.update(self._get_system_info())
        filter_info.update(self._get_filter_info())

    def _get_system_info(self) -> str:
        snapshot = self._snapshot
        if snapshot is None:
            return "Loading system info..."

        gb = 1024**3
        load = snapshot.load_avg
        return (
            f"CPU: {snapshot.cpu_percent:5.1f}% ({len(snapshot.cpu_percent_per_core)} cores)\n"
            f"Mem: {snapshot.memory_used / gb:.1f}G/{snapshot.memory_total / gb:.1f}G "
            f"({snapshot.memory_percent:.1f}%)\n"
            f"Load average: {load[0]:.2f} {load[1]:.2f} {load[2]:.2f}\n"
            f"Uptime: {format_uptime(snapshot.uptime_seconds)}"
        )

    def _get_filter_info(self) -> str:
        # Filter text is user input; keep it out of markup parsing
        text = (self._filter_text or "none").replace("[", "\\[")
        total = len(self._snapshot.processes) if self._snapshot else 0
        return f"Filter: {text}\nShowing: {self._shown} of {total} processes"


class ProcessTable(Container):
    """Container for the process data table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._sort_key: SortKey = SortKey.CPU
        self._process_filter: Expression | None = None

    @property
    def sort_key(self) -> SortKey:
        return self._sort_key

    @property
    def process_filter(self) -> Expression | None:
        return self._process_filter

    @process_filter.setter
    def process_filter(self, value: Expression | None) -> None:
        self._process_filter = value

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        return self._sort_key

    def compose(self) -> ComposeResult:
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"

        table.add_column("PID", key="pid", width=8)
        table.add_column("USER", key="user", width=10)
        table.add_column("S", key="status", width=9)
        table.add_column("CPU%", key="cpu", width=8)
        table.add_column("MEM%", key="mem", width=8)
        table.add_column("RES", key="rss", width=8)
        table.add_column("THR", key="threads", width=5)
        table.add_column("NAME", key="name", width=20)
        table.add_column("Command", key="command")

    def update_processes(self, processes: list[ProcessSnapshot]) -> list[ProcessSnapshot]:
        """
        Show the processes matching the current filter, in sort order.

        Rows are rebuilt in order on each update so sorting is reflected.
        Returns the processes that were shown.
        """
        table = self.query_one("#process-table", DataTable)
        shown = sort_processes(filter_processes(self._process_filter, processes), self._sort_key)

        table.clear()
        for proc in shown:
            table.add_row(*self._row(proc), key=str(proc.pid))

        return shown

    @staticmethod
    def _row(proc: ProcessSnapshot) -> tuple[str, ...]:
        return (
            str(proc.pid),
            proc.username[:10],
            proc.status,
            f"{proc.cpu_percent:5.1f}",
            f"{proc.memory_percent:5.1f}",
            format_bytes(proc.memory_rss),
            str(proc.threads),
            proc.name[:20],
            proc.command_line[:50],
        )


class FilterBar(Input):
    """Input line for filter expressions, hidden until requested."""

    DEFAULT_CSS = """
    FilterBar {
        dock: bottom;
        display: none;
    }
    FilterBar.-open {
        display: block;
    }
    """


class PystopApp(App):
    """Main pystop application."""

    TITLE = "pystop"
    SUB_TITLE = "Process monitor with filter expressions"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
    }

    Horizontal {
        height: auto;
    }

    #system-info {
        width: 1fr;
    }

    #filter-info {
        width: 1fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("slash", "filter", "Filter"),
        ("escape", "close_filter", "Close filter"),
    ]

    def __init__(
        self,
        poll_rate: float = 2.0,
        process_filter: Expression | None = None,
        filter_text: str | None = None,
    ) -> None:
        super().__init__()
        self._update_queue: Queue[SystemSnapshot] = Queue()
        # The monitor collects everything; the table applies the filter so a
        # new expression can be shown without waiting for the next poll
        self._monitor = SystemMonitor(self._update_queue, poll_rate=poll_rate)
        self._initial_filter = process_filter
        self._filter_text = filter_text if process_filter is not None else None
        self._last_snapshot: SystemSnapshot | None = None

    @property
    def filter_text(self) -> str | None:
        return self._filter_text

    def compose(self) -> ComposeResult:
        yield HeaderStats(id="header-stats")
        yield ProcessTable()
        yield FilterBar(placeholder="cpu > 10 and name == python", id="filter-bar")
        yield Footer()

    def on_mount(self) -> None:
        self.query_one(ProcessTable).process_filter = self._initial_filter
        self.query_one(HeaderStats).set_filter_text(self._filter_text)
        self._monitor.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the queue and render the most recent snapshot."""
        snapshot = None
        while True:
            try:
                snapshot = self._update_queue.get_nowait()
            except Empty:
                break

        if snapshot is not None:
            self._update_ui(snapshot)

    def _update_ui(self, snapshot: SystemSnapshot) -> None:
        self._last_snapshot = snapshot
        shown = self.query_one(ProcessTable).update_processes(snapshot.processes)
        self.query_one(HeaderStats).update_stats(snapshot, len(shown))

    def apply_filter(self, text: str) -> bool:
        """
        Parse and apply a filter expression; empty text clears the filter.

        Returns False and keeps the current filter if the expression is invalid.
        """
        text = text.strip()
        if text:
            try:
                expression = parse_filter(text)
            except FilterError as exc:
                self.notify(str(exc), title="Invalid filter", severity="error")
                return False
        else:
            expression = None

        self._filter_text = text or None
        self.query_one(ProcessTable).process_filter = expression
        self.query_one(HeaderStats).set_filter_text(self._filter_text)
        if self._last_snapshot is not None:
            self._update_ui(self._last_snapshot)
        return True

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "filter-bar":
            return
        if self.apply_filter(event.value):
            self.action_close_filter()

    def action_filter(self) -> None:
        """Open the filter bar with the current expression."""
        bar = self.query_one(FilterBar)
        bar.value = self._filter_text or ""
        bar.add_class("-open")
        bar.focus()

    def action_close_filter(self) -> None:
        bar = self.query_one(FilterBar)
        bar.remove_class("-open")
        self.query_one("#process-table", DataTable).focus()

    def action_sort(self) -> None:
        """Cycle through sort keys."""
        new_sort_key = self.query_one(ProcessTable).cycle_sort()
        if self._last_snapshot is not None:
            self._update_ui(self._last_snapshot)
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()

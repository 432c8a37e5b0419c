"""pystop command-line interface."""

from __future__ import annotations

import json
import logging
import os
import sys
from importlib.metadata import PackageNotFoundError, version
from queue import Empty, Queue

import click

from pystop.filters import Expression, FilterError, parse_filter
from pystop.monitor import SystemMonitor, SystemSnapshot, collect_snapshot
from pystop.output import (
    DEFAULT_TOP_N,
    csv_header,
    csv_rows,
    error_payload,
    render_json,
    render_text,
    resolve_sort_key,
    select_processes,
)

logger = logging.getLogger(__name__)

# Intervals below this make psutil's CPU readings noisy
MIN_RECOMMENDED_INTERVAL = 0.2


def _package_version() -> str:
    try:
        return version("pystop")
    except PackageNotFoundError:
        return "0.0.0"


LoggingState = tuple[list[logging.Handler], int, bool]


def configure_logging(verbose: bool) -> LoggingState:
    """
    Send pystop log records to stderr; DEBUG when verbose, WARNING otherwise.

    Returns the previous state of the package logger for :func:`restore_logging`.
    """
    package_logger = logging.getLogger("pystop")
    previous = (list(package_logger.handlers), package_logger.level, package_logger.propagate)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    package_logger.handlers = [handler]
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    package_logger.propagate = False
    return previous


def restore_logging(previous: LoggingState) -> None:
    package_logger = logging.getLogger("pystop")
    package_logger.handlers, level, package_logger.propagate = previous
    package_logger.setLevel(level)


def _report_filter_error(error: FilterError, expression: str, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(error_payload(error, expression), indent=2))
    else:
        click.echo(f"Error: {error}", err=True)
        click.echo(f"Expression: {expression}", err=True)


def _emit(
    snapshot: SystemSnapshot,
    fmt: str,
    filter_text: str | None,
    sort_by: str,
    watching: bool,
    first: bool,
) -> None:
    if fmt == "json":
        click.echo(render_json(snapshot, pretty=not watching))
    elif fmt == "csv":
        if first:
            click.echo(csv_header())
        for line in csv_rows(snapshot):
            click.echo(line)
    else:
        if watching:
            click.clear()
        click.echo(render_text(snapshot, filter_text, sort_by, version=_package_version()))
    sys.stdout.flush()


def _trim(snapshot: SystemSnapshot, sort_by: str, top_n: int) -> SystemSnapshot:
    # The filter has already been applied during collection
    snapshot.processes = select_processes(snapshot.processes, None, sort_by, top_n)
    return snapshot


def _watch(
    process_filter: Expression | None,
    fmt: str,
    filter_text: str | None,
    sort_by: str,
    top_n: int,
    interval: float,
) -> None:
    queue: Queue[SystemSnapshot] = Queue()
    monitor = SystemMonitor(queue, poll_rate=interval, process_filter=process_filter)
    monitor.start()
    first = True
    try:
        while True:
            try:
                snapshot = queue.get(timeout=0.5)
            except Empty:
                continue
            _emit(_trim(snapshot, sort_by, top_n), fmt, filter_text, sort_by, True, first)
            first = False
    except BrokenPipeError:
        # Output closed (e.g. piped into head); silence the flush at exit
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
    except KeyboardInterrupt:
        pass
    finally:
        monitor.stop()


@click.command(
    name="pystop",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option(
    "--filter",
    "filter_text",
    type=str,
    default=None,
    envvar="PYSTOP_FILTER",
    help="Filter processes (e.g., 'cpu > 10').",
)
@click.option(
    "--sort-by",
    type=str,
    default="cpu",
    envvar="PYSTOP_SORT_BY",
    show_default=True,
    help="Sort by metric (cpu, mem, pid, name, user).",
)
@click.option(
    "--top-n",
    type=click.IntRange(min=0),
    default=DEFAULT_TOP_N,
    envvar="PYSTOP_TOP_N",
    show_default=True,
    help="Show top N processes.",
)
@click.option("--json", "json_flag", is_flag=True, help="Output as JSON (NDJSON in watch mode).")
@click.option("--csv", "csv_flag", is_flag=True, help="Output as CSV (takes precedence over --json).")
@click.option("--watch", is_flag=True, help="Continuously refresh the output.")
@click.option(
    "--interval",
    type=click.FloatRange(min=0, min_open=True),
    default=2.0,
    envvar="PYSTOP_INTERVAL",
    show_default=True,
    help="Refresh interval in seconds for watch mode.",
)
@click.option("--tui", is_flag=True, help="Open the interactive process table.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging on stderr.")
@click.version_option(package_name="pystop", prog_name="pystop")
@click.pass_context
def cli(
    ctx: click.Context,
    *,
    filter_text: str | None,
    sort_by: str,
    top_n: int,
    json_flag: bool,
    csv_flag: bool,
    watch: bool,
    interval: float,
    tui: bool,
    verbose: bool,
) -> None:
    """Structured process monitoring with filter expressions."""
    previous_logging = configure_logging(verbose)
    ctx.call_on_close(lambda: restore_logging(previous_logging))

    fmt = "csv" if csv_flag else "json" if json_flag else "text"

    process_filter: Expression | None = None
    if filter_text is not None:
        try:
            process_filter = parse_filter(filter_text)
        except FilterError as exc:
            logger.debug("Rejected filter %r: %s", filter_text, exc)
            _report_filter_error(exc, filter_text, as_json=fmt == "json")
            ctx.exit(1)

    sort_key = resolve_sort_key(sort_by)

    if tui:
        from pystop.app import PystopApp

        PystopApp(poll_rate=interval, process_filter=process_filter, filter_text=filter_text).run()
        return

    if watch:
        if interval < MIN_RECOMMENDED_INTERVAL:
            logger.warning(
                "Interval below %.1fs may produce inaccurate CPU readings", MIN_RECOMMENDED_INTERVAL
            )
        _watch(process_filter, fmt, filter_text, sort_key.value, top_n, interval)
        return

    snapshot = collect_snapshot(process_filter)
    _emit(_trim(snapshot, sort_key.value, top_n), fmt, filter_text, sort_key.value, False, True)


def main() -> None:
    """Entry point for the pystop command."""
    cli()


if __name__ == "__main__":
    main()

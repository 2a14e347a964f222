# slabtop.py
"""
Slabtop — terminal monitor that continuously renders kernel slab cache
statistics read through slabinfo.py.

Features:
- Summary block (objects, slabs, caches, memory) plus a per-cache table
- Sort by any cache field; change the sort key live with a single keystroke
- Redraw every --delay seconds; terminal resize picks up the new size
- One-shot mode (--once) prints a single plain-text snapshot and exits
- Press 'q' to quit gracefully; Ctrl-C also works

Requirements:
  rich
  typer
  PyYAML

Usage:
  python slabtop.py --delay 5 --sort c
  python slabtop.py --once --sort o
  python slabtop.py --config ./slabtop.yaml
"""
from __future__ import annotations

import contextlib
import enum
import os
import select
import signal
import termios
import tty
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

import typer
import yaml
from rich.console import Console
from rich.live import Live
from rich.text import Text

from slabinfo import SLABINFO_PATH, SlabInfo, SlabInfoError, SlabNode, SlabSummary, SortField

__version__ = "0.1.0"

app = typer.Typer(add_completion=False, context_settings={"help_option_names": ["-h", "--help"]})

DEFAULT_DELAY = 3
# keeps the select() timeout inside the C time range
MAX_DELAY = 2**31 - 1
DEFAULT_SORT = SortField.OBJS
CHAINS_ALLOC = 150

FALLBACK_COLS = 80
FALLBACK_ROWS = 24
MIN_ROWS = 10
# summary (5 lines + blank), header, and one spare line
FIXED_OVERHEAD = 8

SUMMARY_LABEL_WIDTH = 35
NAME_WIDTH = 23
HEADINGS = "  OBJS ACTIVE  USE OBJ SIZE  SLABS OBJ/SLAB CACHE SIZE NAME"
PCT_PLACEHOLDER = "--"

SORT_KEYS = {
    "a": SortField.AOBJS,
    "b": SortField.OBJS_PER_SLAB,
    "c": SortField.SIZE,
    "l": SortField.SLABS,
    "v": SortField.ASLABS,
    "n": SortField.NAME,
    "o": SortField.OBJS,
    "p": SortField.PAGES_PER_SLAB,
    "s": SortField.OBJ_SIZE,
    "u": SortField.USE,
}

SORT_HELP = """The following are valid sort criteria:

a: sort by number of active objects

b: sort by objects per slab

c: sort by cache size

l: sort by number of slabs

v: sort by (non display) number of active slabs

n: sort by name

o: sort by number of objects (the default)

p: sort by (non display) pages per slab

s: sort by object size

u: sort by cache utilization
"""


def warn(msg: str) -> None:
    typer.secho(f"slabtop: {msg}", fg=typer.colors.YELLOW, err=True)


def fail(msg: str) -> None:
    typer.secho(f"slabtop: {msg}", fg=typer.colors.RED, err=True)


# --------------------
# Config loading
# --------------------

@dataclass
class Config:
    delay: int = DEFAULT_DELAY
    sort: str = "o"
    slabinfo: str = SLABINFO_PATH
    max_caches: int = CHAINS_ALLOC


CONFIG_KEYS = ("delay", "sort", "slabinfo", "max_caches")


def load_config(path: Optional[str]) -> Config:
    """Load settings from a YAML file; None means built-in defaults."""
    if not path:
        return Config()
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config must be a mapping")
    unknown = sorted(set(raw) - set(CONFIG_KEYS))
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")

    def _positive(k: str, default: int, maximum: Optional[int] = None) -> int:
        val = raw.get(k, default)
        if isinstance(val, bool) or not isinstance(val, int) or val < 1:
            raise ValueError(f"{k} must be a positive integer, got {val!r}")
        if maximum is not None and val > maximum:
            raise ValueError(f"{k} must be at most {maximum}, got {val!r}")
        return val

    sort = raw.get("sort", "o")
    if not isinstance(sort, str) or not sort:
        raise ValueError(f"sort must be a character, got {sort!r}")
    slabinfo = raw.get("slabinfo")
    if slabinfo is None:
        slabinfo = SLABINFO_PATH
    elif not isinstance(slabinfo, str) or not slabinfo:
        raise ValueError(f"slabinfo must be a path, got {slabinfo!r}")
    return Config(
        delay=_positive("delay", DEFAULT_DELAY, MAX_DELAY),
        sort=sort,
        slabinfo=slabinfo,
        max_caches=_positive("max_caches", CHAINS_ALLOC),
    )


# --------------------
# Terminal geometry
# --------------------

class GeometryTracker:
    """Current screen size; resize() doubles as the SIGWINCH handler."""

    def __init__(self, fd: int = 1) -> None:
        self.fd = fd
        self.cols = FALLBACK_COLS
        self.rows = FALLBACK_ROWS

    @property
    def size(self) -> Tuple[int, int]:
        return self.cols, self.rows

    def resize(self, *_) -> None:
        try:
            ws = os.get_terminal_size(self.fd)
        except (OSError, ValueError):
            ws = None
        if ws is not None and ws.lines > MIN_ROWS:
            self.cols, self.rows = ws.columns, ws.lines
        else:
            self.cols, self.rows = FALLBACK_COLS, FALLBACK_ROWS


# --------------------
# Sort keys
# --------------------

def resolve_sort_key(key: str) -> SortField:
    """Map a sort character to its field; anything unknown gives the default."""
    return SORT_KEYS.get(key[:1].lower(), DEFAULT_SORT)


# --------------------
# Snapshot pipeline
# --------------------

@dataclass
class Snapshot:
    nodes: List[SlabNode]
    live: int
    truncated: bool
    stats: SlabSummary


class SnapshotPipeline:
    """
    One fetch+sort cycle against the collector.

    The node buffer is allocated once and refilled in place every cycle.
    After sorting, ``buffer`` is rebound to the list the collector returns,
    so the next fill reuses the same node objects in their new order.
    """

    def __init__(self, info: SlabInfo, capacity: int = CHAINS_ALLOC) -> None:
        self.info = info
        self.capacity = capacity
        try:
            self.buffer = info.allocate_chain_buffer(capacity)
        except SlabInfoError as e:
            raise SlabInfoError(f"Unable to allocate slabinfo nodes: {e}") from e

    def fetch_and_sort(self, sort_field: SortField) -> Snapshot:
        try:
            live = self.info.fill(self.buffer, self.capacity)
        except SlabInfoError as e:
            raise SlabInfoError(f"Unable to get slabinfo node data: {e}") from e
        try:
            self.buffer = self.info.sort(self.buffer, live, sort_field)
        except SlabInfoError as e:
            raise SlabInfoError(f"Unable to sort slab nodes: {e}") from e
        try:
            stats = self.info.get_summary()
        except SlabInfoError as e:
            raise SlabInfoError(f"Error getting slab summary results: {e}") from e
        return Snapshot(self.buffer, live, self.info.total_caches > live, stats)


# --------------------
# Rendering
# --------------------

def format_percent(active: int, total: int) -> str:
    if not total:
        return PCT_PLACEHOLDER
    return f"{100.0 * active / total:.1f}"


def format_summary(stats: SlabSummary) -> List[str]:
    def _line(label: str, value: str) -> str:
        return f" {label:<{SUMMARY_LABEL_WIDTH}}: {value}"

    return [
        _line("Active / Total Objects (% used)",
              f"{stats.nr_active_objs} / {stats.nr_objs} ({format_percent(stats.nr_active_objs, stats.nr_objs)}%)"),
        _line("Active / Total Slabs (% used)",
              f"{stats.nr_active_slabs} / {stats.nr_slabs} ({format_percent(stats.nr_active_slabs, stats.nr_slabs)}%)"),
        _line("Active / Total Caches (% used)",
              f"{stats.nr_active_caches} / {stats.nr_caches} ({format_percent(stats.nr_active_caches, stats.nr_caches)}%)"),
        _line("Active / Total Size (% used)",
              f"{stats.active_size / 1024:.2f}K / {stats.total_size / 1024:.2f}K "
              f"({format_percent(stats.active_size, stats.total_size)}%)"),
        _line("Minimum / Average / Maximum Object",
              f"{stats.min_obj_size / 1024:.2f}K / {stats.avg_obj_size / 1024:.2f}K / {stats.max_obj_size / 1024:.2f}K"),
        "",
    ]


def format_header() -> str:
    return f"{HEADINGS:<78}"


def format_row(node: SlabNode) -> str:
    return (
        f"{node.nr_objs:6d} {node.nr_active_objs:6d} {node.use:3d}% "
        f"{node.obj_size / 1024:7.2f}K {node.nr_slabs:6d} {node.objs_per_slab:8d} "
        f"{node.cache_size // 1024:9d}K {node.name:<{NAME_WIDTH}.{NAME_WIDTH}}"
    )


def visible_rows(screen_rows: int, live: int) -> int:
    return max(0, min(screen_rows - FIXED_OVERHEAD, live))


def build_frame(snapshot: Snapshot, screen_rows: int) -> Text:
    """Compose one full screen: summary, reverse-video header, as many rows as fit."""
    lines = [Text(line) for line in format_summary(snapshot.stats)]
    lines.append(Text(format_header(), style="reverse"))
    for node in snapshot.nodes[:visible_rows(screen_rows, snapshot.live)]:
        lines.append(Text(format_row(node)))
    frame = Text("\n").join(lines)
    frame.no_wrap = True
    frame.overflow = "crop"
    return frame


def print_snapshot(snapshot: Snapshot) -> None:
    for line in format_summary(snapshot.stats):
        typer.echo(line)
    typer.echo(format_header())
    for node in snapshot.nodes[:snapshot.live]:
        typer.echo(format_row(node))


# --------------------
# Keyboard / signals
# --------------------

class WaitResult(enum.Enum):
    TIMEOUT = "timeout"
    DATA = "data"
    CLOSED = "closed"


def _drain(fd: int) -> None:
    with contextlib.suppress(BlockingIOError):
        os.read(fd, 512)


def wait_for_key(input_fd: int,
                 timeout: float,
                 wakeup_fd: Optional[int] = None,
                 stopping: Callable[[], bool] = lambda: False) -> Tuple[WaitResult, Optional[str]]:
    """
    Block up to ``timeout`` seconds for one byte on ``input_fd``.

    ``wakeup_fd`` is the signal self-pipe; a signal makes the wait return
    early, as CLOSED when ``stopping()`` says shutdown was requested and as
    TIMEOUT otherwise. EOF and read errors are CLOSED.
    """
    fds = [input_fd] if wakeup_fd is None else [input_fd, wakeup_fd]
    try:
        ready, _, _ = select.select(fds, [], [], max(0.0, timeout))
    except (OSError, ValueError):
        return WaitResult.CLOSED, None

    if wakeup_fd is not None and wakeup_fd in ready:
        _drain(wakeup_fd)
        if stopping():
            return WaitResult.CLOSED, None
    if input_fd not in ready:
        return WaitResult.TIMEOUT, None

    try:
        data = os.read(input_fd, 1)
    except OSError:
        return WaitResult.CLOSED, None
    if not data:
        return WaitResult.CLOSED, None
    return WaitResult.DATA, data.decode("latin-1")


@dataclass
class LoopState:
    geometry: GeometryTracker = field(default_factory=GeometryTracker)
    sort_field: SortField = DEFAULT_SORT
    delay: int = DEFAULT_DELAY
    once: bool = False

    def request_stop(self, *_) -> None:
        # SIGINT handler: the loop sees this at its next condition check
        self.delay = 0

    @property
    def stopping(self) -> bool:
        return self.delay <= 0


@contextlib.contextmanager
def signal_handlers(state: LoopState) -> Iterator[int]:
    """Install SIGWINCH/SIGINT handlers and a wakeup pipe; yield its read end."""
    rfd, wfd = os.pipe()
    os.set_blocking(rfd, False)
    os.set_blocking(wfd, False)
    old_wakeup = signal.set_wakeup_fd(wfd)
    old_winch = signal.signal(signal.SIGWINCH, state.geometry.resize)
    old_int = signal.signal(signal.SIGINT, state.request_stop)
    try:
        yield rfd
    finally:
        signal.signal(signal.SIGINT, old_int if old_int is not None else signal.SIG_DFL)
        signal.signal(signal.SIGWINCH, old_winch if old_winch is not None else signal.SIG_DFL)
        signal.set_wakeup_fd(old_wakeup)
        os.close(rfd)
        os.close(wfd)


@contextlib.contextmanager
def cbreak(fd: int) -> Iterator[None]:
    """Single-keystroke input on a tty; the saved mode is restored on exit."""
    saved = None
    if os.isatty(fd):
        try:
            saved = termios.tcgetattr(fd)
            tty.setcbreak(fd)
        except termios.error as e:
            warn(f"terminal setting retrieval: {e}")
    try:
        yield
    finally:
        if saved is not None:
            termios.tcsetattr(fd, termios.TCSAFLUSH, saved)


# --------------------
# Main loop
# --------------------

def run_once(state: LoopState, pipeline: SnapshotPipeline) -> None:
    snapshot = pipeline.fetch_and_sort(state.sort_field)
    print_snapshot(snapshot)
    if snapshot.truncated:
        warn(f"showing {snapshot.live} of {pipeline.info.total_caches} caches "
             f"(raise max_caches to see all)")


def run_interactive(state: LoopState, pipeline: SnapshotPipeline, live: Live, input_fd: int) -> None:
    """
    Fetch, sort and paint until 'q', end of input, or SIGINT.

    SlabInfoError propagates; the caller's context managers put the
    terminal back before it is reported.
    """
    with signal_handlers(state) as wakeup_fd:
        painted_size = live.console.size
        while not state.stopping:
            snapshot = pipeline.fetch_and_sort(state.sort_field)

            size = state.geometry.size
            if size != tuple(painted_size):
                live.console.size = size
                painted_size = size
            live.update(build_frame(snapshot, state.geometry.rows), refresh=True)

            result, key = wait_for_key(input_fd, state.delay, wakeup_fd, lambda: state.stopping)
            if result is WaitResult.CLOSED:
                break
            if result is WaitResult.DATA:
                if key in ("q", "Q"):
                    break
                state.sort_field = resolve_sort_key(key)


def run_session(state: LoopState, pipeline: SnapshotPipeline, input_fd: int = 0) -> None:
    console = Console()
    state.geometry.resize()
    console.size = state.geometry.size
    with cbreak(input_fd):
        with Live(console=console, screen=True, auto_refresh=False) as live:
            run_interactive(state, pipeline, live, input_fd)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"slabtop {__version__}")
        raise typer.Exit()


@app.command(epilog=SORT_HELP)
def slabtop(delay: Optional[int] = typer.Option(None, "-d", "--delay", metavar="SECS", help="delay updates"),
            once: bool = typer.Option(False, "-o", "--once", help="only display once, then exit"),
            sort: Optional[str] = typer.Option(None, "-s", "--sort", metavar="CHAR", help="specify sort criteria by character (see below)"),
            config: Optional[str] = typer.Option(None, help="Path to config.yaml"),
            slabinfo: Optional[str] = typer.Option(None, help="Read slab statistics from this file instead of /proc/slabinfo"),
            version: bool = typer.Option(False, "-V", "--version", callback=_version_callback, is_eager=True,
                                         help="output version information and exit")):
    """Display kernel slab cache information in real time."""
    try:
        cfg = load_config(config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise typer.BadParameter(str(e), param_hint="'--config'")
    if delay is not None and delay < 1:
        raise typer.BadParameter("delay must be positive integer", param_hint="'-d' / '--delay'")
    if delay is not None and delay > MAX_DELAY:
        raise typer.BadParameter(f"illegal delay: at most {MAX_DELAY} seconds", param_hint="'-d' / '--delay'")

    state = LoopState(
        sort_field=resolve_sort_key(sort if sort is not None else cfg.sort),
        delay=delay if delay is not None else cfg.delay,
        once=once,
    )
    if once:
        state.delay = 0

    rc = 0
    try:
        with SlabInfo.open(slabinfo or cfg.slabinfo) as info:
            pipeline = SnapshotPipeline(info, cfg.max_caches)
            if state.once:
                run_once(state, pipeline)
            else:
                run_session(state, pipeline)
    except KeyboardInterrupt:
        # Ctrl-C before the loop installed its own handler
        rc = 0
    except SlabInfoError as e:
        fail(str(e))
        rc = 1
    raise typer.Exit(code=rc)


if __name__ == "__main__":
    app()

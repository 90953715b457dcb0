"""Terminal feedback for the CLI: status lines, a spinner and a progress bar.

Everything is drawn on one shared stderr console so ``--json`` output on
stdout stays machine-readable. Live displays only run on a TTY; elsewhere
they degrade to a single plain line (spinner) or nothing (progress bar).
While a live display is drawing, console log handlers are muted.
"""

from __future__ import annotations

import sys
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

import structlog
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn

# Below this many items the bar is not worth drawing
BAR_MIN_ITEMS = 100

_console = Console(stderr=True)

_PREFIXES = {
    "success": "[green]✓[/green] ",
    "error": "[red]✗[/red] ",
    "warning": "[yellow]![/yellow] ",
    "info": "  ",
    "none": "",
}

_live = threading.local()


def get_console() -> Console:
    return _console


def is_console_suppressed() -> bool:
    """True while a live display owns the terminal on this thread."""
    return bool(getattr(_live, "depth", 0))


@contextmanager
def suppress_console_logs() -> Iterator[None]:
    """Mute console log handlers for the block; file handlers are unaffected."""
    _live.depth = getattr(_live, "depth", 0) + 1
    try:
        yield
    finally:
        _live.depth -= 1


def _is_tty() -> bool:
    isatty = getattr(sys.stderr, "isatty", None)
    return bool(isatty and isatty())


def status(message: str, *, style: str = "info", indent: int = 0) -> None:
    """One styled line on stderr. Unknown styles print without a prefix."""
    _console.print(f"{' ' * indent}{_PREFIXES.get(style, '')}{message}", highlight=False)
    structlog.get_logger().debug("status", message=message, style=style)


def progress[T](
    iterable: Iterable[T],
    *,
    desc: str = "Processing",
    total: int | None = None,
    unit: str = "files",
) -> Iterator[T]:
    """Yield from ``iterable``, drawing a bar on a TTY when there are enough items."""
    if total is None and hasattr(iterable, "__len__"):
        total = len(iterable)  # type: ignore[arg-type]

    if not (_is_tty() and total is not None and total > BAR_MIN_ITEMS):
        yield from iterable
        return

    columns = (
        TextColumn("    {task.description}"),
        BarColumn(bar_width=25, style="cyan", complete_style="cyan"),
        MofNCompleteColumn(),
        TextColumn(unit),
    )
    with suppress_console_logs(), Progress(*columns, console=_console, transient=True) as bar:
        task_id = bar.add_task(desc, total=total)
        for item in iterable:
            yield item
            bar.advance(task_id)


@contextmanager
def spinner(message: str) -> Iterator[None]:
    """Animated spinner on a TTY, otherwise a single ``message...`` line."""
    if not _is_tty():
        _console.print(f"{message}...", highlight=False)
        yield
        return
    with suppress_console_logs(), _console.status(f"[cyan]{message}[/cyan]", spinner="dots"):
        yield

"""Structured logging for scans.

structlog renders through stdlib ``logging`` so each configured output
(console or JSON; stderr, stdout or a file) gets its own handler and level.
Events emitted inside ``scan_scope()`` carry that scan's ``scan_id``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog

if TYPE_CHECKING:
    from cataloger.config.models import LoggingConfig, LogOutputConfig

# Chatty at DEBUG; never logged below WARNING
QUIET_LOGGERS = ("pymongo", "sqlalchemy.engine")

_scan_id: ContextVar[str | None] = ContextVar("scan_id", default=None)


def get_scan_id() -> str | None:
    return _scan_id.get()


def set_scan_id(scan_id: str | None = None) -> str:
    """Bind ``scan_id``, or a fresh 12-char hex id, to the current context."""
    value = scan_id or uuid4().hex[:12]
    _scan_id.set(value)
    return value


def clear_scan_id() -> None:
    _scan_id.set(None)


@contextmanager
def scan_scope(scan_id: str | None = None) -> Iterator[str]:
    """Correlate every event logged inside the block with one scan id."""
    value = set_scan_id(scan_id)
    try:
        yield value
    finally:
        clear_scan_id()


def _inject_scan_id(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    scan_id = _scan_id.get()
    if scan_id is not None:
        event_dict.setdefault("scan_id", scan_id)
    return event_dict


class _LiveDisplayFilter(logging.Filter):
    """Hold back console records while a rich spinner or bar owns the terminal."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: ARG002
        from cataloger.core.progress import is_console_suppressed

        return not is_console_suppressed()


def _level(name: str | None, fallback: int) -> int:
    if name is None:
        return fallback
    value = logging.getLevelName(name.upper())
    return value if isinstance(value, int) else fallback


def _pre_chain() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        _inject_scan_id,
    ]


def _handler_for(
    output: LogOutputConfig, pre_chain: list[structlog.types.Processor], level: int
) -> logging.Handler:
    handler: logging.Handler
    colors = False
    if output.destination in ("stderr", "stdout"):
        stream = sys.stderr if output.destination == "stderr" else sys.stdout
        handler = logging.StreamHandler(stream)
        handler.addFilter(_LiveDisplayFilter())
        colors = hasattr(stream, "isatty") and stream.isatty()
    else:
        path = Path(output.destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")

    renderer: structlog.types.Processor
    if output.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colors, pad_level=False)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain)
    )
    handler.setLevel(level)
    return handler


def configure_logging(
    *,
    config: LoggingConfig | None = None,
    level: str = "INFO",
    json_format: bool = False,
) -> None:
    """Install structlog over stdlib logging, replacing any previous handlers.

    Pass ``config`` for several outputs. Without it a single stderr output
    is built from ``level`` and ``json_format``.
    """
    from cataloger.config.models import LoggingConfig, LogOutputConfig

    if config is None:
        config = LoggingConfig(
            level=level,  # type: ignore[arg-type]
            outputs=[LogOutputConfig(format="json" if json_format else "console")],
        )
    root_level = _level(config.level, logging.INFO)
    pre_chain = _pre_chain()

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfigured per CLI invocation
        cache_logger_on_first_use=False,
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(root_level)
    for output in config.outputs:
        root.addHandler(_handler_for(output, pre_chain, _level(output.level, root_level)))
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """structlog logger, bound with ``logger=name`` when a name is given."""
    log = structlog.get_logger()
    return log.bind(logger=name) if name else log  # type: ignore[no-any-return]

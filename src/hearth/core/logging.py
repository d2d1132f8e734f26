"""Structured logging for hearth.

Modules log through ``logging.getLogger(__name__)`` with %-style arguments.
:func:`configure_logging` puts a structlog ``ProcessorFormatter`` in front of
the stdlib handlers, so those records render as coloured console lines
(``text``) or JSON lines (``json``).

Every record carries the running periodic job, the calendar being synced (when
there is one) and the OTel trace ids. With ``log_root`` set, JSON copies go to::

    <log_root>/hearth/hearth.log   all records
    <log_root>/http/hearth.log     httpx/httpcore transport records
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_job: ContextVar[str | None] = ContextVar("hearth_job", default=None)
_calendar: ContextVar[str | None] = ContextVar("hearth_calendar", default=None)

_HTTP_LOGGERS = ("httpx", "httpcore")
_QUIET_LOGGERS = (*_HTTP_LOGGERS, "alembic.runtime.migration")

_LOG_FILENAME = "hearth.log"


def set_job_context(name: str | None) -> None:
    """Tag records from the current task with a periodic job name."""
    _job.set(name)


def get_job_context() -> str | None:
    return _job.get()


@contextmanager
def calendar_context(calendar_id: uuid.UUID) -> Iterator[None]:
    """Tag records emitted inside the block with ``calendar_id``."""
    token = _calendar.set(str(calendar_id))
    try:
        yield
    finally:
        _calendar.reset(token)


def add_run_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``job`` always and ``calendar_id`` inside a calendar sync."""
    event_dict["job"] = _job.get()
    calendar_id = _calendar.get()
    if calendar_id is not None:
        event_dict["calendar_id"] = calendar_id
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``trace_id``/``span_id``; zeros outside a recording span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt, utc=True),
        add_run_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, timestamp_fmt: str
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_pre_chain(timestamp_fmt),
    )


def _json_file_handler(directory: Path) -> logging.FileHandler:
    directory.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(directory / _LOG_FILENAME)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
    handler.setLevel(logging.DEBUG)
    return handler


def _drop_handlers(logger: logging.Logger) -> None:
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler):
            handler.close()
    logger.handlers.clear()


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Install hearth's handlers on the root logger, replacing any existing ones.

    ``fmt`` is ``"text"`` or ``"json"`` and only affects the stderr handler;
    files under ``log_root`` are always JSON.
    """
    if fmt == "json":
        console = _formatter(structlog.processors.JSONRenderer(), "iso")
    else:
        console = _formatter(structlog.dev.ConsoleRenderer(), "%H:%M:%S")

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(console)

    root = logging.getLogger()
    _drop_handlers(root)
    root.addHandler(stderr_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        quiet = logging.getLogger(name)
        quiet.setLevel(logging.WARNING)
        _drop_handlers(quiet)

    if log_root is None:
        return

    log_root = Path(log_root)
    root.addHandler(_json_file_handler(log_root / "hearth"))
    http_handler = _json_file_handler(log_root / "http")
    for name in _HTTP_LOGGERS:
        logging.getLogger(name).addHandler(http_handler)

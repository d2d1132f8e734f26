"""Tests for structured logging module."""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path

import pytest
import structlog

from hearth.core.logging import (
    _HTTP_LOGGERS,
    _QUIET_LOGGERS,
    _job,
    add_otel_context,
    add_run_context,
    calendar_context,
    configure_logging,
    get_job_context,
    set_job_context,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and job context between tests."""
    token = _job.set(None)
    yield
    _job.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).handlers.clear()


def _flush_root() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


class TestAddRunContext:
    def test_injects_job_name(self):
        set_job_context("calendar-sync")
        assert get_job_context() == "calendar-sync"
        result = add_run_context(None, "info", {"event": "test"})
        assert result["job"] == "calendar-sync"

    def test_handles_unset_context(self):
        result = add_run_context(None, "info", {"event": "test"})
        assert result["job"] is None
        assert "calendar_id" not in result

    def test_calendar_id_only_inside_block(self):
        calendar_id = uuid.uuid4()
        with calendar_context(calendar_id):
            inside = add_run_context(None, "info", {"event": "test"})
        outside = add_run_context(None, "info", {"event": "test"})
        assert inside["calendar_id"] == str(calendar_id)
        assert "calendar_id" not in outside

    def test_calendar_context_is_reset_on_error(self):
        with pytest.raises(RuntimeError):
            with calendar_context(uuid.uuid4()):
                raise RuntimeError("boom")
        assert "calendar_id" not in add_run_context(None, "info", {})


class TestAddOtelContext:
    def test_zeroed_ids_when_no_span(self):
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("test-span"):
            result = add_otel_context(None, "info", {"event": "test"})
            assert result["trace_id"] != "0" * 32
            assert len(result["trace_id"]) == 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_reconfiguring_does_not_duplicate_handlers(self, tmp_path: Path):
        configure_logging(log_root=tmp_path)
        configure_logging(log_root=tmp_path)
        assert len(logging.getLogger().handlers) == 2
        assert len(logging.getLogger("httpx").handlers) == 1

    def test_quiet_loggers_suppressed_and_level_applied(self):
        configure_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG
        for name in _QUIET_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING


class TestLogFiles:
    def test_creates_app_and_http_files(self, tmp_path: Path):
        configure_logging(log_root=tmp_path)
        root_files = [
            h.baseFilename
            for h in logging.getLogger().handlers
            if isinstance(h, logging.FileHandler)
        ]
        assert root_files == [str(tmp_path / "hearth" / "hearth.log")]
        for name in _HTTP_LOGGERS:
            http_files = [
                h.baseFilename
                for h in logging.getLogger(name).handlers
                if isinstance(h, logging.FileHandler)
            ]
            assert http_files == [str(tmp_path / "http" / "hearth.log")]

    def test_migration_logs_do_not_go_to_http_file(self, tmp_path: Path):
        configure_logging(log_root=tmp_path)
        assert logging.getLogger("alembic.runtime.migration").handlers == []

    def test_file_output_is_json_with_run_context(self, tmp_path: Path):
        configure_logging(fmt="text", log_root=tmp_path)
        set_job_context("calendar-sync")
        calendar_id = uuid.uuid4()
        with calendar_context(calendar_id):
            logging.getLogger("hearth.test").info("created %d events", 2)
        _flush_root()

        lines = (tmp_path / "hearth" / "hearth.log").read_text().strip().splitlines()
        data = json.loads(lines[-1])
        assert data["event"] == "created 2 events"
        assert data["job"] == "calendar-sync"
        assert data["calendar_id"] == str(calendar_id)
        assert data["logger"] == "hearth.test"
        assert data["level"] == "info"

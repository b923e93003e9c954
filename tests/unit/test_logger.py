"""
tests/unit/test_logger.py — Structured Logging

setup_logging() writes JSON lines to the rotating file, stamps the source
id, and carries run context bound with bind_run_context(). Global logging
state is restored after each test.
"""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from compliance_scheduler.observability.logger import (
    LOG_FILENAME,
    bind_run_context,
    clear_run_context,
    get_logger,
    setup_logging,
)


@pytest.fixture
def restore_logging():
    saved_config = structlog.get_config()
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    structlog.configure(**saved_config)
    structlog.contextvars.clear_contextvars()


def _lines(log_dir):
    for handler in logging.getLogger().handlers:
        handler.flush()
    text = (log_dir / LOG_FILENAME).read_text(encoding="utf-8")
    return [json.loads(line) for line in text.splitlines() if line.strip()]


class TestSetupLogging:

    def test_file_gets_json_with_source(self, tmp_path, restore_logging):
        setup_logging(level="INFO", log_dir=tmp_path, console_output=False, source_id="agent-7")
        get_logger("tests.logger", component="calendar").info("calendar.activate", generation=3)

        [line] = _lines(tmp_path)
        assert line["event"] == "calendar.activate"
        assert line["generation"] == 3
        assert line["component"] == "calendar"
        assert line["source"] == "agent-7"
        assert line["level"] == "info"
        assert line["logger"] == "tests.logger"
        assert "timestamp" in line

    def test_level_filters(self, tmp_path, restore_logging):
        setup_logging(level="WARNING", log_dir=tmp_path, console_output=False)
        log = get_logger("tests.logger")
        log.info("dropped")
        log.warning("kept")
        assert [l["event"] for l in _lines(tmp_path)] == ["kept"]

    def test_unknown_level_falls_back_to_info(self, tmp_path, restore_logging):
        setup_logging(level="chatty", log_dir=tmp_path, console_output=False)
        assert logging.getLogger().level == logging.INFO

    def test_console_handler_optional(self, tmp_path, restore_logging):
        setup_logging(log_dir=tmp_path, console_output=False)
        assert len(logging.getLogger().handlers) == 1
        setup_logging(log_dir=tmp_path, console_output=True, json_format=True)
        assert len(logging.getLogger().handlers) == 2


class TestRunContext:

    def test_bound_then_cleared(self, tmp_path, restore_logging):
        setup_logging(log_dir=tmp_path, console_output=False)
        log = get_logger("tests.logger")

        bind_run_context("nightly-scan", 4)
        log.info("dispatch.run_start")
        clear_run_context()
        log.info("dispatch.idle")

        first, second = _lines(tmp_path)
        assert (first["task"], first["generation"]) == ("nightly-scan", 4)
        assert "task" not in second and "generation" not in second

"""
observability/logger.py — Structured Logger

structlog routed through stdlib logging:

  - the log file is always JSON lines (rotated by size)
  - the console goes to stderr, pretty on a TTY and JSON when piped, so a
    CLI streaming results on stdout is never interleaved with log lines
  - every line carries timestamp, level, logger, event and the engine's
    source id; lines emitted during a run also carry task and generation

Usage:
    from compliance_scheduler.observability.logger import get_logger, setup_logging
    setup_logging(level="INFO", log_dir="./data/logs", source_id="agent-7")
    log = get_logger(__name__)
    log.info("calendar.activate", generation=3, tasks=2)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

LOG_FILENAME = "compliance-scheduler.log"


# ─────────────────────────────────────────────────────────────────────────────
# Setup
# ─────────────────────────────────────────────────────────────────────────────

def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: Optional[bool] = None,
    console_output: bool = True,
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 5,
    source_id: Optional[str] = None,
) -> None:
    """
    Configure structlog and stdlib logging. Call once at startup.

    json_format applies to the console only (None picks JSON unless stderr
    is a TTY). source_id, when given, is stamped on every line as `source`.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    if json_format is None:
        json_format = not sys.stderr.isatty()

    pre_chain = _pre_chain(source_id)

    file_handler = _file_handler(Path(log_dir), max_bytes, backup_count)
    file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), pre_chain))
    handlers: list[logging.Handler] = [file_handler]

    if console_output:
        console_renderer = (
            structlog.processors.JSONRenderer() if json_format
            else structlog.dev.ConsoleRenderer(colors=True)
        )
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(_formatter(console_renderer, pre_chain))
        handlers.append(console_handler)

    for handler in handlers:
        handler.setLevel(numeric_level)
    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _pre_chain(source_id: Optional[str]) -> list[Any]:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if source_id:
        processors.append(_stamp_source(source_id))
    processors += [
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    return processors


def _stamp_source(source_id: str):
    def processor(_logger: Any, _method: str, event_dict: dict) -> dict:
        event_dict.setdefault("source", source_id)
        return event_dict
    return processor


def _file_handler(log_dir: Path, max_bytes: int, backup_count: int) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=log_dir / LOG_FILENAME,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )


def _formatter(renderer: Any, pre_chain: list[Any]) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Loggers and run context
# ─────────────────────────────────────────────────────────────────────────────

def get_logger(name: str = "compliance_scheduler", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Example:
        log = get_logger(__name__, component="dispatcher")
        log.info("dispatch.run_start", module="test-module")
        # → {"event": "dispatch.run_start", "module": "test-module",
        #    "component": "dispatcher", "logger": "...dispatcher", ...}
    """
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_run_context(task_name: str, generation: int) -> None:
    """
    Attach task and generation to every log line until clear_run_context().

    Each run executes in its own asyncio.Task, which copies the context on
    creation, so bindings never leak between concurrently running tasks.
    """
    structlog.contextvars.bind_contextvars(task=task_name, generation=generation)


def clear_run_context() -> None:
    structlog.contextvars.unbind_contextvars("task", "generation")

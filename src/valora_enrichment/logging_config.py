"""Structured logging configuration with run context for enrichment tracing.

This module provides structured JSON logging with:
- Run IDs and categories stamped on every record emitted during a run
- Consistent log formatting across the manager, fetchers and stores
"""
from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

# Context variables for run tracking
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)
category_var: ContextVar[Optional[str]] = ContextVar("category", default=None)

_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "run_id",
        "category",
    }
)


class RunContextFilter(logging.Filter):
    """Logging filter that adds the active run context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = run_id_var.get()
        record.category = category_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if getattr(record, "run_id", None):
            log_data["run_id"] = record.run_id
        if getattr(record, "category", None):
            log_data["category"] = record.category

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed via ``extra=``
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[run=%(run_id)s %(category)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(RunContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(RunContextFilter())
        root_logger.addHandler(file_handler)

    # Quiet APScheduler's per-tick chatter unless debugging
    if root_logger.level > logging.DEBUG:
        logging.getLogger("apscheduler").setLevel(logging.WARNING)


@contextmanager
def run_context(run_id: str, category: Optional[str] = None) -> Iterator[None]:
    """Bind run_id (and optionally category) for records logged inside the block."""
    run_token = run_id_var.set(run_id)
    category_token = category_var.set(category)
    try:
        yield
    finally:
        category_var.reset(category_token)
        run_id_var.reset(run_token)

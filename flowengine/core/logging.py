"""Logging configuration for the workflow engine."""

import contextvars
import logging
import sys
import json
import traceback
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any
from pathlib import Path


DEFAULT_LOG_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(module)s:%(funcName)s:%(lineno)d] - %(message)s"
)

# Per-task logging context; asyncio copies it into every task a run spawns.
_logging_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "flowengine_logging_context", default={}
)


class StructuredFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


class WorkflowContextFilter(logging.Filter):
    """Filter copying the current run context (run_id, workflow_id, ...) onto records."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _logging_context.get()
        if not hasattr(record, 'extra_fields'):
            record.extra_fields = {}
        for key, value in context.items():
            record.extra_fields.setdefault(key, value)
        return True


_context_filter = WorkflowContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    stream=None
) -> logging.Logger:
    """
    Configure logging for the workflow engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        log_format: Custom log format string
        structured: Whether to use structured JSON logging
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of backup files to keep
        stream: Console stream, stdout by default

    Returns:
        Root logger instance
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            fmt=log_format or DEFAULT_LOG_FORMAT,
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_context_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(_context_filter)
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger("flowengine.core").setLevel(root_logger.level)
    logging.getLogger("flowengine.api").setLevel(root_logger.level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**kwargs) -> contextvars.Token:
    """Add fields to the logging context of the current task.

    Returns:
        Token that can be passed to :func:`clear_logging_context` to restore
        the previous context
    """
    context = dict(_logging_context.get())
    context.update(kwargs)
    return _logging_context.set(context)


def clear_logging_context(token: Optional[contextvars.Token] = None):
    """Restore the context saved by ``token``, or drop all fields."""
    if token is not None:
        _logging_context.reset(token)
    else:
        _logging_context.set({})


def get_logging_context() -> Dict[str, Any]:
    return dict(_logging_context.get())


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log a message with additional context fields."""
    extra = {"extra_fields": context}
    logger.log(level, message, extra=extra)


class ErrorRecoveryLogger:
    """Logger for node retry and recovery events."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"flowengine.recovery.{component_name}")
        self.component_name = component_name

    def log_recovery_attempt(self, node_id: str, error: str, attempt: int, max_retries: int, delay: float):
        """Log that a failed node is about to be retried."""
        log_with_context(
            self.logger, logging.WARNING,
            f"Retrying node {node_id} after attempt {attempt} (max retries {max_retries}) in {delay:.2f}s: {error}",
            component=self.component_name,
            node_id=node_id,
            error_message=error,
            attempt=attempt,
            max_retries=max_retries,
            delay=delay
        )

    def log_recovery_success(self, node_id: str, attempts_used: int):
        """Log a node that completed after at least one retry."""
        log_with_context(
            self.logger, logging.INFO,
            f"Node {node_id} recovered after {attempts_used} attempts",
            component=self.component_name,
            node_id=node_id,
            attempts_used=attempts_used,
            recovery_status="success"
        )

    def log_recovery_failure(self, node_id: str, final_error: str, attempts_used: int):
        """Log a node whose retry budget is exhausted or whose failure is not retryable."""
        log_with_context(
            self.logger, logging.ERROR,
            f"Node {node_id} failed after {attempts_used} attempts: {final_error}",
            component=self.component_name,
            node_id=node_id,
            error_message=final_error,
            attempts_used=attempts_used,
            recovery_status="failed"
        )

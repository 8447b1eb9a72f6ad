"""
Structured logging for story-jobs.

Every log call carries a flat dict of fields: the message, the current
job correlation (trace id, job id, owner id, operation) and whatever
keyword arguments the caller passed. Fields ride on the LogRecord as
``record.fields``; the formatter decides whether they become a JSON
object or a ``key=value`` suffix.

Correlation lives in a ContextVar, so each poller task logs with its
own job id without passing it around.
"""

from __future__ import annotations

import logging
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import orjson

ROOT_LOGGER_NAME = "story_jobs"

# =============================================================================
# Correlation
# =============================================================================


@dataclass(frozen=True)
class LogContext:
    """Job correlation attached to every record logged inside trace_context()."""

    trace_id: str | None = None
    job_id: str | None = None
    owner_id: str | None = None
    operation: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        fields = {
            "trace_id": self.trace_id,
            "job_id": self.job_id,
            "owner_id": self.owner_id,
            "operation": self.operation,
        }
        fields = {k: v for k, v in fields.items() if v is not None}
        fields.update(self.extra)
        return fields

    def with_update(self, **kwargs) -> LogContext:
        extra = {**self.extra, **kwargs.pop("extra", {})}
        current = {
            "trace_id": self.trace_id,
            "job_id": self.job_id,
            "owner_id": self.owner_id,
            "operation": self.operation,
        }
        for key, value in kwargs.items():
            if key in current:
                current[key] = value
            else:
                extra[key] = value
        return LogContext(extra=extra, **current)


_log_context: ContextVar[LogContext] = ContextVar("story_jobs_log_context", default=LogContext())


def generate_trace_id() -> str:
    return f"trace_{uuid.uuid4().hex[:16]}"


# =============================================================================
# Logger
# =============================================================================


class StructuredLogger:
    """
    Thin wrapper over a stdlib logger that attaches structured fields.

    Example:
        ```python
        logger = get_logger("story_jobs.poller")

        with logger.trace_context(job_id=record.job_id, operation="poll"):
            logger.info("Status applied", progress=0.4)
        ```
    """

    def __init__(self, name: str = ROOT_LOGGER_NAME):
        self.name = name
        self._logger = logging.getLogger(name)

    @property
    def context(self) -> LogContext:
        return _log_context.get()

    @contextmanager
    def trace_context(self, trace_id: str | None = None, **kwargs) -> Iterator[str]:
        """
        Bind correlation fields for the duration of the block.

        Nested blocks inherit the outer trace id unless one is given.

        Yields:
            The trace id in effect inside the block
        """
        current = _log_context.get()
        trace_id = trace_id or current.trace_id or generate_trace_id()
        token = _log_context.set(current.with_update(trace_id=trace_id, **kwargs))
        try:
            yield trace_id
        finally:
            _log_context.reset(token)

    def _log(self, level: int, message: str, fields: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**_log_context.get().to_dict(), **fields}
        self._logger.log(level, message, extra={"fields": merged})

    def debug(self, message: str, **fields) -> None:
        self._log(logging.DEBUG, message, fields)

    def info(self, message: str, **fields) -> None:
        self._log(logging.INFO, message, fields)

    def warning(self, message: str, **fields) -> None:
        self._log(logging.WARNING, message, fields)

    def error(self, message: str, **fields) -> None:
        self._log(logging.ERROR, message, fields)

    def log_transition(
        self,
        job_id: str,
        old_status: str | None,
        new_status: str,
        **fields,
    ) -> None:
        """One line per job status change."""
        self._log(
            logging.INFO,
            f"Job {job_id}: {old_status or '-'} -> {new_status}",
            {
                "event_type": "transition",
                "job_id": job_id,
                "old_status": old_status,
                "new_status": new_status,
                **fields,
            },
        )

    def log_error(
        self,
        error: Exception,
        message: str | None = None,
        level: int = logging.ERROR,
        **fields,
    ) -> None:
        """Log an exception; StoryJobError details are expanded into fields."""
        data: dict[str, Any] = {
            "event_type": "error",
            "error_type": type(error).__name__,
            "error_message": str(error),
        }
        to_dict = getattr(error, "to_dict", None)
        if callable(to_dict):
            details = to_dict()
            data["error_kind"] = details.get("kind")
            data["retryable"] = details.get("retryable")
            data["error_context"] = details.get("context")
        data.update(fields)
        self._log(level, message or f"Error: {error}", data)


# =============================================================================
# Formatters
# =============================================================================


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return dict(getattr(record, "fields", None) or {})


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_record_fields(record),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode("utf-8")


class TextFormatter(logging.Formatter):
    """``HH:MM:SS.mmm LEVEL logger message key=value ...``"""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        suffix = " ".join(f"{k}={v}" for k, v in _record_fields(record).items() if v is not None)
        line = f"{stamp} {record.levelname:<8} {record.name} {record.getMessage()}"
        if suffix:
            line = f"{line} {suffix}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# =============================================================================
# Timing
# =============================================================================


@dataclass
class Timer:
    started: float = field(default_factory=time.perf_counter)
    end_time: float | None = None

    def stop(self) -> float:
        self.end_time = time.perf_counter()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> float:
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.started) * 1000


@contextmanager
def timed() -> Iterator[Timer]:
    """Measure the enclosed block; the timer stops even if it raises."""
    timer = Timer()
    try:
        yield timer
    finally:
        timer.stop()


# =============================================================================
# Setup
# =============================================================================

_loggers: dict[str, StructuredLogger] = {}


def get_logger(name: str = ROOT_LOGGER_NAME) -> StructuredLogger:
    if name not in _loggers:
        _loggers[name] = StructuredLogger(name)
    return _loggers[name]


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    stream: Any = None,
) -> StructuredLogger:
    """Install a single stream handler on the ``story_jobs`` logger."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, level.upper()))
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else TextFormatter())
    root.addHandler(handler)
    return get_logger(ROOT_LOGGER_NAME)


__all__ = [
    "ROOT_LOGGER_NAME",
    "LogContext",
    "StructuredLogger",
    "JSONFormatter",
    "TextFormatter",
    "Timer",
    "timed",
    "generate_trace_id",
    "get_logger",
    "configure_logging",
]

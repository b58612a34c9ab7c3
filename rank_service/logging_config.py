"""Structured JSON logging for Cloud Run compatibility.

Configures python-json-logger for GCP Cloud Logging severity mapping. Records
carry the ranking context bound with `log_context()`: the HTTP request id,
the phase being run (run / submit / fetch) and the batch number, so one
batch's submit, fetches and retries can be filtered out of a shared log.
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

# GCP severity mapping: Python log levels -> Cloud Logging severity strings
_GCP_SEVERITY = {
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL",
}

# Chatty third-party loggers that would otherwise log every provider request
_QUIET_LOGGERS = ("httpx", "httpcore")

CONTEXT_FIELDS = ("request_id", "phase", "batch")

_context: ContextVar[dict[str, object]] = ContextVar("rank_log_context", default={})


@contextmanager
def log_context(**fields: object) -> Iterator[None]:
    """Bind CONTEXT_FIELDS to every record logged inside the block.

    Nested blocks add to the outer context; None values are ignored. Tasks
    started inside the block inherit it.
    """
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log context fields: {', '.join(sorted(unknown))}")
    bound = {**_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _context.set(bound)
    try:
        yield
    finally:
        _context.reset(token)


def current_log_context() -> dict[str, object]:
    return dict(_context.get())


class LogContextFilter(logging.Filter):
    """Copies the bound log context onto each record as `rank_context`."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.rank_context = current_log_context()
        return True


class GCPJsonFormatter(JsonFormatter):
    """JSON formatter that maps Python log levels to GCP severity."""

    def add_fields(
        self,
        log_record: dict[str, object],
        record: logging.LogRecord,
        message_dict: dict[str, object],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["severity"] = _GCP_SEVERITY.get(record.levelname, record.levelname)
        log_record.pop("levelname", None)
        # context fields go top-level so Cloud Logging can filter on them
        log_record.pop("rank_context", None)
        log_record.update(getattr(record, "rank_context", None) or {})


class ContextTextFormatter(logging.Formatter):
    """Plain-text formatter that appends `[key=value ...]` when a context is bound."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ctx = getattr(record, "rank_context", None)
        if ctx:
            line += "  [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]"
        return line


def setup_logging(*, level: str = "INFO") -> None:
    """Configure structured JSON logging when on Cloud Run, plain text locally."""
    is_cloud_run = bool(os.getenv("K_SERVICE") or os.getenv("CLOUD_RUN_JOB"))

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler()
    handler.addFilter(LogContextFilter())
    if is_cloud_run:
        handler.setFormatter(GCPJsonFormatter(
            fmt="%(message)s %(name)s %(funcName)s %(lineno)d",
            rename_fields={"message": "message", "name": "logger"},
        ))
    else:
        handler.setFormatter(ContextTextFormatter(
            "%(asctime)s %(levelname)-8s %(name)s:%(lineno)d  %(message)s",
            datefmt="%H:%M:%S",
        ))

    root.addHandler(handler)

    if root.level > logging.DEBUG:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def generate_request_id() -> str:
    """Generate a unique request ID for trace correlation."""
    return uuid.uuid4().hex[:16]

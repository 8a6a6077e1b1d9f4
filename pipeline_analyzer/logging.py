"""Logging setup: human-readable console output plus a rotating JSON-lines file.

Every record carries the active correlation id, bound with
:func:`correlation_scope` by whatever drives a unit of work (a CLI health
check, a sync run, one webhook delivery).
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import pathlib
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any

_LOG_CONFIGURED = False
_CORRELATION_ID_CTX: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
DEFAULT_LOG_FILE = "logs/pipeline_analyzer.jsonl"
CONSOLE_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s (correlation_id=%(correlation_id)s)"

# Attributes every LogRecord has; anything else on a record came from ``extra``.
_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class CorrelationContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _CORRELATION_ID_CTX.get()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record: fixed header keys, then the caller's ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(extra_fields(record))
        if not payload.get("correlation_id"):
            payload.pop("correlation_id", None)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Return the structured fields a caller attached to ``record``."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


def get_correlation_id() -> str | None:
    return _CORRELATION_ID_CTX.get()


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """Bind a correlation id for the block, generating a fresh one when none is given."""
    value = correlation_id or uuid.uuid4().hex
    token = _CORRELATION_ID_CTX.set(value)
    try:
        yield value
    finally:
        _CORRELATION_ID_CTX.reset(token)


def _level(value: str | int | None, default: int) -> int:
    if isinstance(value, int):
        return value
    if not value:
        return default
    resolved = logging.getLevelName(value.upper())
    return resolved if isinstance(resolved, int) else default


def resolve_log_file(log_file: str | os.PathLike[str] | None = None) -> pathlib.Path | None:
    """Resolve the JSON log path; an empty ``LOG_FILE`` turns the file handler off."""
    configured = log_file if log_file is not None else os.getenv("LOG_FILE", DEFAULT_LOG_FILE)
    if not str(configured):
        return None
    path = pathlib.Path(configured)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def configure_logging(
    console_level: str | int | None = None,
    log_file: str | os.PathLike[str] | None = None,
) -> None:
    """Install console and JSON file handlers on the root logger once per process.

    ``console_level`` defaults to ``LOG_LEVEL`` (WARNING when unset) and
    ``log_file`` to ``LOG_FILE``.
    """
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED:
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    context_filter = CorrelationContextFilter()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(_level(console_level or os.getenv("LOG_LEVEL"), logging.WARNING))
    console_handler.addFilter(context_filter)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)

    path = resolve_log_file(log_file)
    if path is not None:
        file_handler = RotatingFileHandler(path, maxBytes=10_000_000, backupCount=5)
        file_handler.setLevel(logging.INFO)
        file_handler.addFilter(context_filter)
        file_handler.setFormatter(JsonFormatter())
        root_logger.addHandler(file_handler)

    # Request lines from the HTTP client duplicate the adapters' own logging.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    _LOG_CONFIGURED = True


__all__ = [
    "CorrelationContextFilter",
    "JsonFormatter",
    "configure_logging",
    "correlation_scope",
    "extra_fields",
    "get_correlation_id",
    "resolve_log_file",
]

"""Logging setup for connectors, the indexing pipeline and the CLI.

This module centralizes logging configuration. It provides:

- A JSON formatter (opt-in via LOG_JSON) that carries structured context
  passed through ``extra=`` or a human-readable formatter.
- Timed rotation of log files for application logs (app.log) and sync
  summaries (sync.log), honoring retention and timezone options.
- Scrubbing of credential-like keys from any logged context.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_RETENTION_DAYS,
LOG_ROTATE_UTC, LOG_CONSOLE.
"""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import TimedRotatingFileHandler
from typing import Any

SENSITIVE_FIELDS = {
    "authorization",
    "x-api-key",
    "password",
    "token",
    "api_key",
    "access_token",
    "refresh_token",
    "connection_string",
}

# Attributes present on every LogRecord; anything else came from ``extra=``.
_RESERVED_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}

SYNC_LOGGER_NAME = "fastrag.sync"


def _scrub(data: object) -> object:
    """Recursively scrub sensitive fields from dictionaries and lists."""

    if isinstance(data, dict):
        return {
            k: ("***" if str(k).lower() in SENSITIVE_FIELDS else _scrub(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_scrub(v) for v in data]
    return data


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record: dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = _context(record)
        if context:
            log_record.update(_scrub(context))  # type: ignore[arg-type]
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


class ContextFormatter(logging.Formatter):
    """Plain formatter that appends ``extra=`` context as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _scrub(_context(record))
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())  # type: ignore[union-attr]
            line = f"{line} [{pairs}]"
        return line


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return ContextFormatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def _file_handler(
    path: str, formatter: logging.Formatter, retention_days: int, rotate_utc: bool
) -> logging.Handler:
    handler = TimedRotatingFileHandler(
        path,
        when="midnight",
        backupCount=retention_days,
        utc=rotate_utc,
    )
    handler.setFormatter(formatter)
    return handler


def init_logging() -> logging.Logger:
    """Initialise the ``fastrag`` and sync-summary loggers."""

    log_dir = os.getenv("LOG_DIR", "logs")
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_json = os.getenv("LOG_JSON", "false").lower() == "true"
    retention_days = int(os.getenv("LOG_RETENTION_DAYS", "7"))
    rotate_utc = os.getenv("LOG_ROTATE_UTC", "false").lower() == "true"
    log_console = os.getenv("LOG_CONSOLE", "false").lower() == "true"

    os.makedirs(log_dir, exist_ok=True)

    formatter = _get_formatter(log_json)
    log_level = getattr(logging, log_level_str, logging.INFO)

    app_logger = logging.getLogger("fastrag")
    if not app_logger.handlers:
        app_logger.addHandler(
            _file_handler(
                os.path.join(log_dir, "app.log"), formatter, retention_days, rotate_utc
            )
        )
        if log_console:
            stream = logging.StreamHandler()
            stream.setFormatter(formatter)
            app_logger.addHandler(stream)
    app_logger.setLevel(log_level)

    sync_logger = logging.getLogger(SYNC_LOGGER_NAME)
    sync_logger.handlers.clear()
    sync_logger.addHandler(
        _file_handler(
            os.path.join(log_dir, "sync.log"), formatter, retention_days, rotate_utc
        )
    )
    sync_logger.setLevel(log_level)
    return app_logger


__all__ = ["JsonFormatter", "ContextFormatter", "SYNC_LOGGER_NAME", "init_logging"]

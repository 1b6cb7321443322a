"""Logging setup for SiteFoundry.

Console output is colored text or JSON lines; an optional log file always
gets JSON. Crawl code logs through :class:`StructuredLogger`, which attaches
its keyword context to the record as ``ctx_*`` attributes so both
formatters can render it (per-page extraction attempts, run progress).
"""

from __future__ import annotations
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

CONTEXT_PREFIX = "ctx_"

# Chatty third-party loggers capped at WARNING
QUIET_LOGGERS = ("aiohttp.access", "apscheduler", "asyncpg", "trafilatura")

# Attributes every LogRecord carries; anything else came in through ``extra``
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Structured context attached to ``record``, keys without the prefix."""
    return {
        key[len(CONTEXT_PREFIX):]: value
        for key, value in record.__dict__.items()
        if key.startswith(CONTEXT_PREFIX)
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record; structured context goes under ``context``."""

    def __init__(self, service_name: str = "sitefoundry"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        context = record_context(record)
        if context:
            entry["context"] = context

        # Plain ``extra=`` fields from non-structured callers
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith(CONTEXT_PREFIX):
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Single-line console format with the context as ``key=value`` pairs."""

    LEVEL_COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        parts = [when, f"{record.levelname:8}", record.name, record.getMessage()]

        context = record_context(record)
        if context:
            parts.append(" ".join(f"{key}={value}" for key, value in context.items()))

        line = " | ".join(parts)
        color = self.LEVEL_COLORS.get(record.levelname) if self.use_colors else None
        if color:
            line = f"{color}{line}{self.RESET}"

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _file_handler(log_file: str, level: int, service_name: str) -> logging.Handler:
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter(service_name))
    return handler


def setup_logging(
    level: str = "INFO",
    service_name: str = "sitefoundry",
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: bool = True
) -> None:
    """Configure the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Value of the ``service`` field in JSON output
        log_file: Optional path for an additional JSON log file
        use_json: Emit JSON lines on the console instead of colored text
        use_colors: Color console lines by level (text output only)
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(numeric_level)
    console.setFormatter(JSONFormatter(service_name) if use_json else ColoredFormatter(use_colors))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)
    root_logger.addHandler(console)
    if log_file:
        root_logger.addHandler(_file_handler(log_file, numeric_level, service_name))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class StructuredLogger:
    """Logger wrapper that carries keyword context onto every record.

    ``slog.info("Page failed", url=url, http_status=404)`` produces a record
    with ``ctx_url`` and ``ctx_http_status`` plus any default context given
    at construction or through :meth:`bind`.
    """

    def __init__(self, name: str, **default_context):
        self.logger = logging.getLogger(name)
        self.default_context = default_context

    def bind(self, **context) -> "StructuredLogger":
        """New logger with this logger's context extended by ``context``."""
        return StructuredLogger(self.logger.name, **{**self.default_context, **context})

    def _extra(self, context: Dict[str, Any]) -> Dict[str, Any]:
        merged = {**self.default_context, **context}
        return {f"{CONTEXT_PREFIX}{key}": value for key, value in merged.items()}

    def _log(self, level: int, message: str, exc_info: bool = False, **context) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(level, message, exc_info=exc_info, extra=self._extra(context))

    def debug(self, message: str, **context) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context) -> None:
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, **context) -> None:
        self._log(logging.ERROR, message, **context)

    def exception(self, message: str, **context) -> None:
        self._log(logging.ERROR, message, exc_info=True, **context)


def get_structured_logger(name: str, **default_context) -> StructuredLogger:
    return StructuredLogger(name, **default_context)

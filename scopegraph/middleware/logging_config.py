"""
Structured logging configuration.

- Development: one readable line per record, decision context appended
- Production: one JSON object per record (log aggregator compatible)
- LOG_LEVEL picks the level; LOG_FORMAT ("json" | "readable") overrides the
  format choice

Engine modules attach decision context through ``extra=``:

    logger.info("Access denied", extra={"actor_id": 7, "decision": "deny_out_of_scope"})
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Structured fields copied from ``extra=`` onto the output when present
EXTRA_FIELDS = (
    "actor_id",
    "scope_type",
    "topic",
    "event_type",
    "decision",
    "definition_id",
    "node_id",
)

QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "redis")


def _context(record: logging.LogRecord) -> dict:
    return {key: getattr(record, key) for key in EXTRA_FIELDS if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per record for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",      # cyan
        "INFO": "\033[32m",       # green
        "WARNING": "\033[33m",    # yellow
        "ERROR": "\033[31m",      # red
        "CRITICAL": "\033[35m",   # magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        ctx = _context(record)
        tag = " [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]" if ctx else ""
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}{tag}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    Level: LOG_LEVEL env, else DEBUG in development/testing and INFO in
    production. Format: LOG_FORMAT env, else JSON in production and readable
    otherwise.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = os.getenv("LOG_FORMAT", "json" if is_prod else "readable").lower()
    formatter = JSONFormatter() if fmt == "json" else ReadableFormatter()

    root = logging.getLogger()
    # Drop handlers from earlier factory calls
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)

"""
Logging setup for OpsGate.

Two output shapes share one set of context fields:
  - JSON lines in production, one object per record
  - a short coloured line everywhere else

Records emitted inside a request carry the request id and the caller's
user id; service code adds its own ids (role, instance, step) through
``extra={...}``.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Copied from ``extra={...}`` (or the request) into JSON output.
CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "acting_user_id",
    "role_id",
    "template_id",
    "instance_id",
    "step_id",
    "project_id",
    "decision",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

# Shown inline by the readable formatter.
INLINE_FIELDS = ("request_id", "user_id", "role_id", "instance_id", "step_id")

QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine")


class RequestContextFilter(logging.Filter):
    """Stamp ``request_id`` / ``user_id`` from ``flask.g`` unless already set."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = getattr(g, "request_id", None)
            if getattr(record, "user_id", None) is None:
                record.user_id = getattr(g, "current_user_id", None)
        return True


def context_of(record: logging.LogRecord, fields=CONTEXT_FIELDS) -> dict:
    return {key: getattr(record, key) for key in fields if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
            **context_of(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"

        inline = context_of(record, INLINE_FIELDS)
        if inline:
            line += " (" + " ".join(f"{k}={v}" for k, v in inline.items()) + ")"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _level_for(app, production: bool) -> int:
    name = app.config.get("LOG_LEVEL") or ("INFO" if production else "DEBUG")
    return getattr(logging, str(name).upper(), logging.INFO)


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    JSON output when neither DEBUG nor TESTING is set; readable otherwise.
    Calling it again replaces the handler, so repeated app creation in
    tests does not duplicate lines.
    """
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing
    level = _level_for(app, production)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if production else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info(
            "Logging configured: level=%s format=%s",
            logging.getLevelName(level), "json" if production else "readable",
        )

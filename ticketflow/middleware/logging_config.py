"""
Logging setup for Ticketflow.

Two output shapes, chosen from the app config:

* JSON lines when neither DEBUG nor TESTING is set, one object per record
  with the lifecycle context (ticket, step, approval, actor, request) that
  services pass through ``extra={...}``.
* A compact single-line format otherwise.

LOG_LEVEL overrides the level in both cases.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from ticketflow.middleware.timing import RequestContextFilter

# Record attributes promoted into JSON output when present
CONTEXT_FIELDS = (
    "request_id",
    "actor_id",
    "ticket_id",
    "step_id",
    "approval_id",
    "document_id",
    "finance_officer_id",
    "forced",
    "fields",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message [ticket=.. step=..] {rid}``"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        tags = [
            f"{key.split('_')[0]}={getattr(record, key)}"
            for key in ("ticket_id", "step_id", "approval_id")
            if getattr(record, key, None) is not None
        ]
        line = f"{ts} {level} {record.name}: {record.getMessage()}"
        if tags:
            line += f" [{' '.join(tags)}]"
        request_id = getattr(record, "request_id", None)
        if request_id:
            line += f" {{{request_id}}}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger for this app."""
    testing = app.config.get("TESTING", False)
    structured = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if structured else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter(color=sys.stderr.isatty()))

    # Replaced, not appended: the test suite builds the app more than once
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("werkzeug", "sqlalchemy.engine", "flask_limiter"):
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if structured else "readable")

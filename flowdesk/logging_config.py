"""Logging setup for flowdesk.

Records are written one per line to stdout, as JSON by default. A record's
`context` extra is kept as a nested object, and its `tenant_id` is copied to
the top level so per-tenant lines can be filtered without parsing context.
"""

import json
import logging
import sys
from datetime import datetime, timezone

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "apscheduler")


def _context(record: logging.LogRecord) -> dict:
    context = getattr(record, "context", None)
    return context if isinstance(context, dict) else {}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        context = _context(record)
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if context.get("tenant_id"):
            log_data["tenant_id"] = context["tenant_id"]
        if context:
            log_data["context"] = context
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """`LEVEL logger [tenant] message key=value ...` for local runs."""

    def format(self, record: logging.LogRecord) -> str:
        context = dict(_context(record))
        tenant_id = context.pop("tenant_id", None)
        parts = [record.levelname, record.name]
        if tenant_id:
            parts.append(f"[{tenant_id}]")
        parts.append(record.getMessage())
        parts.extend(f"{k}={v}" for k, v in context.items())
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(TextFormatter() if fmt == "text" else JSONFormatter())
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"flowdesk.{name}")

"""
Logging for the relay: a single stream handler on the root logger.

    production   JSONFormatter, one object per line
    otherwise    PrettyFormatter, coloured single line

Every entry carries the request context set by RequestLoggingMiddleware
(request id, method, endpoint, dispatcher badge, and the alert id taken
from the URL) plus whichever relay fields the call site passes in
``extra``:

    logger.info("Alert created", extra={"alert_id": alert_id, "status": "new"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sos_relay.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

# Keys the middleware may place in the context, in display order
CONTEXT_KEYS = ("request_id", "method", "endpoint", "badge_id", "alert_id")

# Relay fields copied from ``extra`` into JSON entries
EXTRA_FIELDS = (
    "alert_id", "status", "alert_type", "badge_id",
    "recipient_count", "sent", "failed", "channel",
    "duration_ms", "status_code",
)

QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def set_request_context(**fields: Any) -> None:
    """
    Replace the request context.

    Keys outside CONTEXT_KEYS and None values are dropped; calling with
    no arguments clears the context.
    """
    _request_context.set(
        {key: fields[key] for key in CONTEXT_KEYS if fields.get(key) is not None}
    )


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def _alert_id(record: logging.LogRecord) -> Optional[str]:
    return getattr(record, "alert_id", None) or get_request_context().get("alert_id")


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        ctx = get_request_context()
        if ctx:
            entry["context"] = ctx

        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value.value if isinstance(value, Enum) else value

        alert_id = _alert_id(record)
        if alert_id:
            entry["alert_id"] = alert_id

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str, ensure_ascii=False)


class PrettyFormatter(logging.Formatter):
    """
    Coloured single line for local development:

        14:02:11 WARNING  [3f9a1c2e] @DISPATCH_01 <-Nx1> sos_relay...: message
    """

    LEVEL_COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def _tags(self, record: logging.LogRecord) -> str:
        ctx = get_request_context()
        tags = []
        if ctx.get("request_id"):
            tags.append(f"[{ctx['request_id'][:8]}]")
        badge_id = getattr(record, "badge_id", None) or ctx.get("badge_id")
        if badge_id:
            tags.append(f"@{badge_id}")
        alert_id = _alert_id(record)
        if alert_id:
            tags.append(f"<{alert_id}>")
        return " ".join(tags)

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelname, self.RESET)
        line = f"{colour}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"

        tags = self._tags(record)
        if tags:
            line += f" {tags}"
        line += f" {record.name}: {record.getMessage()}"

        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging(level: Optional[str] = None, *, json_logs: Optional[bool] = None) -> None:
    """Install the relay handler on the root logger. Safe to call twice."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    if json_logs is None:
        json_logs = settings.is_production

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_logs else PrettyFormatter())
    root.handlers[:] = [handler]

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)

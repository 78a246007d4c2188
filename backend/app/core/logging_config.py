"""
Structured logging for the alert pipeline.

Every record passes through AlertContextFilter, which stamps it with the
request context (set by the middleware) and fills in ``community_id`` /
``observer_id`` from that context when the call site did not pass them.
Formatters then only read record attributes:

    production    JSONFormatter     {"ts", "level", "logger", "msg",
                                     "alert": {...}, "http": {...}}
    otherwise     PrettyFormatter   14:00:03 INFO     [3f9c0a1e] riverside/ui dispatcher: ...

Store reader threads have no request context; their log lines carry the
alert fields passed explicitly through ``extra``.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

ALERT_FIELDS = (
    "community_id",
    "observer_id",
    "sender_id",
    "alert_key",
    "alert_time",
    "watermark",
    "reason",
)
HTTP_FIELDS = ("request_id", "method", "endpoint", "status_code", "duration_ms", "client_ip")


def set_request_context(**kwargs: Any) -> None:
    """Replace the request-scoped context; no arguments clears it."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


class AlertContextFilter(logging.Filter):
    """Copy request context onto the record without overriding call-site extras."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_request_context().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def _collect(record: logging.LogRecord, fields) -> Dict[str, Any]:
    return {k: getattr(record, k) for k in fields if getattr(record, k, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, alert and HTTP fields grouped."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "service": settings.APP_NAME,
            "store": settings.ALERT_STORE_BACKEND,
        }
        if record.threadName != "MainThread":
            entry["thread"] = record.threadName

        alert = _collect(record, ALERT_FIELDS)
        if alert:
            entry["alert"] = alert
        http = _collect(record, HTTP_FIELDS)
        if http:
            entry["http"] = http

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Console lines tagged with request id and community/observer."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True) -> None:
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8s}"
        if self.color:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}{self.RESET}"

        tags = []
        request_id = getattr(record, "request_id", None)
        if request_id:
            tags.append(f"[{request_id[:8]}]")
        scope = "/".join(
            str(v) for v in (
                getattr(record, "community_id", None),
                getattr(record, "observer_id", None),
            ) if v
        )
        if scope:
            tags.append(scope)

        # backend.app.alerts.dispatcher -> dispatcher
        name = record.name.rsplit(".", 1)[-1]
        line = " ".join(
            [self.formatTime(record, "%H:%M:%S"), level, *tags, f"{name}: {record.getMessage()}"]
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """Install one stdout handler on the root logger (idempotent)."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    use_json = settings.is_production if json_logs is None else json_logs
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter(sys.stdout.isatty()))
    handler.addFilter(AlertContextFilter())
    root.addHandler(handler)

    # The middleware already logs one line per request
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)

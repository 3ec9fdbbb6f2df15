"""
Logging for both halves of the system.

The backend of record logs one line per HTTP request; a device runner logs
merges, relay contacts and sync cycles. Both go through the root logger set
up here, and both carry a scoped context so lines can be told apart when
several devices and the backend share one terminal or one log pipeline:

    backend   request_id, method, endpoint, device_id (when the caller sends it)
    device    device_id

Production (ENVIRONMENT=production) writes one JSON object per line;
anything else gets a short coloured console line.

    from sosrelay.app.core.logging_config import bind_log_context, setup_logging

    setup_logging()
    bind_log_context(device_id="phone-7")
    logging.getLogger(__name__).info("Merged alert", extra={"alert_id": "E1718000000000"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sosrelay.app.core.config import settings

_context: ContextVar[Dict[str, Any]] = ContextVar("sosrelay_log_context", default={})

# extra= keys lifted into their own JSON fields
ALERT_FIELDS = ("alert_id", "peer_id", "source", "device_id")
REQUEST_FIELDS = ("duration_ms", "status_code", "endpoint")

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine")


def bind_log_context(**fields: Any) -> Token:
    """Layer ``fields`` over the current context; undo with reset_log_context."""
    return _context.set({**_context.get(), **fields})


def reset_log_context(token: Token) -> None:
    _context.reset(token)


def log_context() -> Dict[str, Any]:
    return dict(_context.get())


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        ctx = log_context()
        if ctx:
            entry["context"] = ctx
        for key in ALERT_FIELDS + REQUEST_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """``12:00:01 INFO     [phone-7] sosrelay.app.propagation.dedup: ... (E1718...)``"""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, self.RESET)
        ctx = log_context()
        scope = ctx.get("device_id") or str(ctx.get("request_id", ""))[:8]
        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{f' [{scope}]' if scope else ''} {record.name}: {record.getMessage()}"
        )
        alert_id = getattr(record, "alert_id", None)
        if alert_id and alert_id not in line:
            line += f" ({alert_id})"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """Install one stdout handler on the root logger; repeat calls replace it."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    use_json = settings.is_production if json_output is None else json_output
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter())
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

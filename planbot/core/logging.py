"""
Logging for the planbot API and the quota worker.

Records carry the request id and, once a route has identified the caller,
the Telegram user id. Production writes one JSON object per line; other
environments write a single readable line per record.
"""

import json
import logging
import os
import sys
from bisect import bisect_right
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

SERVICE_NAME = "planbot"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
tg_id_ctx_var: ContextVar[Optional[int]] = ContextVar("tg_id", default=None)

_BUCKET_EDGES = (10, 100, 500, 1000)
_BUCKET_LABELS = ("<10ms", "10-100ms", "100-500ms", "500-1000ms", ">=1000ms")

_CONTEXT_ATTRS = ("request_id", "tg_id")
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def bind_tg_id(tg_id: Optional[int]):
    """Attach a Telegram user id to every record logged in this context.

    Returns the token for ``tg_id_ctx_var.reset``.
    """
    return tg_id_ctx_var.set(tg_id)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    return _BUCKET_LABELS[bisect_right(_BUCKET_EDGES, latency_ms)]


class RequestIdFilter(logging.Filter):
    """Fill request_id and tg_id from the context unless the caller set them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_ctx_var.get()
        if getattr(record, "tg_id", None) is None:
            record.tg_id = tg_id_ctx_var.get()
        return True


class PlanbotFormatter(logging.Formatter):
    def __init__(self, as_json: bool = False):
        super().__init__()
        self.as_json = as_json

    def format(self, record: logging.LogRecord) -> str:
        fields: Dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "event": record.getMessage(),
        }
        for attr in _CONTEXT_ATTRS:
            value = getattr(record, attr, None)
            if value is not None:
                fields[attr] = value
        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key in _CONTEXT_ATTRS or value is None:
                continue
            fields[key] = value
        if record.exc_info:
            fields["exc_info"] = self.formatException(record.exc_info)

        if self.as_json:
            return json.dumps(fields, default=str)

        head = f"{fields.pop('ts')} {fields.pop('level'):<7} {fields.pop('event')}"
        fields.pop("service")
        fields.pop("logger")
        trace = fields.pop("exc_info", None)
        tail = " ".join(f"{k}={v}" for k, v in fields.items())
        line = f"{head} | {tail}" if tail else head
        return f"{line}\n{trace}" if trace else line


def configure_logging(env: str = "development") -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(PlanbotFormatter(as_json=env.lower() == "production"))
    handler.addFilter(RequestIdFilter())

    logger = logging.getLogger(SERVICE_NAME)
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    logger.handlers = [handler]
    logger.propagate = True

    for noisy in ("uvicorn", "uvicorn.error", "httpx"):
        logging.getLogger(noisy).propagate = False


def _clip(value, limit: int = 500) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unprintable>"
    return text if len(text) <= limit else f"{text[:limit]}...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    tg_id: Optional[int] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Log `msg` on the planbot logger with clipped extra fields.

    Explicit request_id / tg_id win over the context values.
    """
    logger = logging.getLogger(SERVICE_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, object] = {
        "request_id": request_id or request_id_ctx_var.get(),
        "tg_id": tg_id if tg_id is not None else tg_id_ctx_var.get(),
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        fields[key] = _clip(value)

    getattr(logger, level, logger.info)(msg, extra=fields)

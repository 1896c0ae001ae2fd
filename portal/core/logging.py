"""
Logging for the portal.

All records go through the "portal" logger tree. Production writes one JSON
object per line; other environments write a single readable line. The
request id, the user being acted on and the cron job name are bound through
context variables, so call sites only pass fields specific to the event:

    with log_context(job="report-usage"):
        logger.info("usage.report_completed", extra={"reported": 3})

Extra fields whose name looks like a credential (api keys, webhook secrets,
invite tokens, signatures) are replaced before formatting.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_ctx_var: ContextVar[Optional[str]] = ContextVar("log_user_id", default=None)
job_ctx_var: ContextVar[Optional[str]] = ContextVar("log_job", default=None)

_CONTEXT_VARS = {"request_id": request_id_ctx_var, "user_id": user_id_ctx_var, "job": job_ctx_var}

_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_SECRET_MARKERS = ("api_key", "secret", "token", "password", "authorization", "signature")
REDACTED = "[redacted]"
MAX_FIELD_LENGTH = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


@contextmanager
def log_context(*, user_id: Optional[str] = None, job: Optional[str] = None) -> Iterator[None]:
    """Bind user_id and/or job to every record logged inside the block."""
    bound = []
    if user_id is not None:
        bound.append((user_id_ctx_var, user_id_ctx_var.set(user_id)))
    if job is not None:
        bound.append((job_ctx_var, job_ctx_var.set(job)))
    try:
        yield
    finally:
        for var, token in reversed(bound):
            var.reset(token)


def is_secret_field(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def truncate(value: Any, limit: int = MAX_FIELD_LENGTH) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms")):
        if latency_ms < bound:
            return label
    return ">=1000ms"


class ContextFilter(logging.Filter):
    """Fill request_id, user_id and job from context and redact credential fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT_VARS.items():
            if getattr(record, name, None) is None:
                setattr(record, name, var.get())
        for name in list(record.__dict__):
            if name not in _RECORD_ATTRS and is_secret_field(name):
                setattr(record, name, REDACTED)
        return True


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and value is not None
    }


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = _fields(record)
        context = " ".join(f"{name}={fields.pop(name)}" for name in _CONTEXT_VARS if name in fields)
        line = f"{_timestamp(record)} {record.levelname:<7} {record.name} {record.getMessage()}"
        if context:
            line += f" [{context}]"
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: int = logging.INFO) -> None:
    logger = logging.getLogger("portal")
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else ConsoleFormatter())
    handler.addFilter(ContextFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn installs its own handlers; keep its records out of ours
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    logger_name: str = "portal",
) -> None:
    """Log one structured event; extra values are truncated and credentials redacted."""
    logger = logging.getLogger(logger_name)
    if not logging.getLogger("portal").handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, Any] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id or user_id_ctx_var.get(),
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        fields[key] = REDACTED if is_secret_field(key) else truncate(value)

    logger.log(getattr(logging, level.upper(), logging.INFO), msg, extra=fields)

"""
Structured logging with correlation ID support.

Every engine operation binds a fresh correlation_id, so a billing callback,
the transition it triggers and the durable writes it schedules share one id.
Structured fields passed through ``extra=`` (user_id, plan, transition, ...)
are carried into JSON output.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

correlation_id_ctx_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord has; anything else came in through ``extra=``
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime", "taskName"}
_MAX_FIELD_LEN = 500


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx_var.get()


def new_correlation_id() -> str:
    """Bind a fresh correlation_id to the current context and return it."""
    cid = uuid4().hex[:12]
    correlation_id_ctx_var.set(cid)
    return cid


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z')


def _truncate(value: Any) -> Any:
    if isinstance(value, (bool, int, float)) or value is None:
        return value
    text = str(value)
    if len(text) <= _MAX_FIELD_LEN:
        return text
    return text[:_MAX_FIELD_LEN] + "...<truncated>"


def structured_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: _truncate(value)
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and key != "correlation_id"
    }


class CorrelationIdFilter(logging.Filter):
    """Inject correlation_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = get_correlation_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        payload.update(structured_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        cid = getattr(record, "correlation_id", None)
        cid_part = f" [cid={cid}]" if cid else ""
        user_id = getattr(record, "user_id", None)
        user_part = f" user={user_id}" if user_id else ""
        line = f"{_format_timestamp(record)} {record.levelname} [roomkeeper]{cid_part} {record.getMessage()}{user_part}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development") -> None:
    """JSON lines in production, one readable line per record elsewhere."""
    logger = logging.getLogger("roomkeeper")
    logger.setLevel(logging.INFO)

    formatter: logging.Formatter
    if env.lower() == "production":
        formatter = JsonFormatter()
    else:
        formatter = PrettyFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    logging.getLogger("httpx").setLevel(logging.WARNING)


def log_event(level: str, event_type: str, *, user_id: Optional[str] = None, **fields: Any) -> None:
    """Log a named connection/lifecycle event with its structured fields."""
    logger = logging.getLogger("roomkeeper.events")
    log_fn = getattr(logger, level, logger.info)
    log_fn(event_type, extra={"event_type": event_type, "user_id": user_id, **fields})

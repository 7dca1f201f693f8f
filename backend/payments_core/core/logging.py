"""Structured logging for the billing core.

Every record carries the request correlation ID and, inside a billing
operation, the provider, tenant and event it belongs to.
"""

import json
import logging
import sys
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from payments_core.core.tracing import current_ids

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
billing_context_var: ContextVar[dict] = ContextVar("billing_context", default={})

_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "correlation_id",
}

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "stripe")


def get_correlation_id() -> str:
    """Correlation ID of the current context, created on first use.

    Outside a request the active trace id stands in for it.
    """
    cid = correlation_id_var.get()
    if cid is not None:
        return cid
    trace_id, _ = current_ids()
    if trace_id:
        return trace_id
    cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    correlation_id_var.set(None)


@contextmanager
def billing_context(**fields: Any) -> Iterator[dict]:
    """Attach provider/tenant/event fields to every record logged inside.

    Nested contexts merge; ``None`` values are ignored.

    Example:
        with billing_context(provider="stripe", tenant_id="t1"):
            logger.info("Webhook verified")
    """
    merged = dict(billing_context_var.get())
    merged.update((k, v) for k, v in fields.items() if v is not None)
    token = billing_context_var.set(merged)
    try:
        yield merged
    finally:
        billing_context_var.reset(token)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, include_stack_trace: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        trace_id, span_id = current_ids()
        if trace_id:
            entry["trace_id"] = trace_id
            entry["span_id"] = span_id

        context = billing_context_var.get()
        if context:
            entry["billing"] = {k: _jsonable(v) for k, v in context.items()}

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            entry["exception"] = {"type": exc_type.__name__, "message": str(exc)}
            if self.include_stack_trace and tb is not None:
                entry["exception"]["stack_trace"] = traceback.format_exception(exc_type, exc, tb)

        extra = {
            key: _jsonable(value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS
        }
        if extra:
            entry["extra"] = extra

        return json.dumps(entry, default=str)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
) -> None:
    """Route all logging to stdout.

    Args:
        level: Root log level name
        json_format: Emit StructuredFormatter JSON instead of plain text
        include_stack_trace: Include tracebacks in JSON records
    """
    numeric_level = logging.getLevelName(level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(include_stack_trace=include_stack_trace))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"
        ))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(numeric_level)
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    """Log an error with optional exception info and extra fields."""
    logger.error(message, exc_info=exception, extra=extra)

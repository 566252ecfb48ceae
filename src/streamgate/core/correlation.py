"""
Correlation IDs for request tracing.

Every request handled by the gateway runs inside a correlation context so
that log lines and audit events can be tied back to it.

Usage:
    with correlation_context(path="/api/query") as cid:
        logger.info("handling request")  # CorrelatedLogger adds cid
"""

from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Any, Generator, Mapping

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "streamgate_correlation_id", default=None
)

_trace_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "streamgate_trace_context", default={}
)

CORRELATION_HEADER = "X-Correlation-ID"
_INBOUND_HEADERS = ("x-correlation-id", "x-request-id", "x-trace-id")


def get_correlation_id() -> str | None:
    """Current correlation ID, or None outside a correlation context."""
    return _correlation_id.get()


def generate_correlation_id() -> str:
    """New correlation ID in the form sg-<16 hex chars>."""
    return f"sg-{uuid.uuid4().hex[:16]}"


def extract_correlation_id(headers: Mapping[str, str]) -> str | None:
    """
    Pull an inbound correlation ID from request headers.

    X-Correlation-ID wins over X-Request-ID, which wins over X-Trace-ID.
    Header names are matched case-insensitively.
    """
    normalized = {k.lower(): v for k, v in headers.items()}
    for header in _INBOUND_HEADERS:
        value = normalized.get(header)
        if value:
            return value
    return None


@contextmanager
def correlation_context(
    correlation_id: str | None = None,
    **extra_context: Any,
) -> Generator[str, None, None]:
    """
    Scope a correlation ID (and optional trace fields) to a block.

    Safe for both sync and async code; the previous values are restored
    on exit.
    """
    cid = correlation_id or generate_correlation_id()

    id_token = _correlation_id.set(cid)
    ctx_token = _trace_context.set({**_trace_context.get(), **extra_context})
    try:
        yield cid
    finally:
        _trace_context.reset(ctx_token)
        _correlation_id.reset(id_token)


def get_trace_context() -> dict[str, Any]:
    """Trace fields of the current context, including the correlation ID."""
    context = dict(_trace_context.get())
    context["correlation_id"] = _correlation_id.get()
    return context


class CorrelatedLogger:
    """
    Logger wrapper that stamps every record with the trace context.

    Usage:
        logger = CorrelatedLogger(logging.getLogger(__name__))
    """

    def __init__(self, logger: Any) -> None:
        self._logger = logger

    def _with_context(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        extra = dict(kwargs.get("extra") or {})
        for key, value in get_trace_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return kwargs

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.debug(msg, *args, **self._with_context(kwargs))

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.info(msg, *args, **self._with_context(kwargs))

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.warning(msg, *args, **self._with_context(kwargs))

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.error(msg, *args, **self._with_context(kwargs))

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.exception(msg, *args, **self._with_context(kwargs))

"""Trace id propagation across async boundaries and message hops."""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar, Token

_trace_id: ContextVar[str | None] = ContextVar("relay_trace_id", default=None)


def get_trace_id() -> str | None:
    """Get current trace ID from context."""
    return _trace_id.get()


def set_trace_id(trace_id: str | None) -> Token[str | None]:
    """Set trace ID in context; returns a token for :func:`reset_trace_id`."""
    return _trace_id.set(trace_id)


def reset_trace_id(token: Token[str | None]) -> None:
    _trace_id.reset(token)


def generate_trace_id() -> str:
    """Generate a new trace ID."""
    return str(uuid.uuid4())


class TraceIdLogFilter(logging.Filter):
    """Adds ``trace_id`` to every record so formatters can reference it.

    Example::

        handler.addFilter(TraceIdLogFilter())
        handler.setFormatter(logging.Formatter("%(trace_id)s %(message)s"))
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = get_trace_id() or "-"
        return True

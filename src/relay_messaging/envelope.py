"""MessageEnvelope: the immutable unit of transport and its publish options."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Well-known header keys (wire contract).
ATTEMPT_COUNT_HEADER = "attemptCount"
MAX_ATTEMPTS_HEADER = "maxAttempts"
TIMESTAMP_HEADER = "timestamp"
TRACE_ID_HEADER = "traceId"
LAST_ERROR_HEADER = "lastError"
ORIGINAL_EXCHANGE_HEADER = "originalExchange"
ORIGINAL_ROUTING_KEY_HEADER = "originalRoutingKey"
ERROR_HEADER = "x-error"
ERROR_TYPE_HEADER = "x-error-type"

DEFAULT_MAX_ATTEMPTS = 3


def _new_message_id() -> str:
    return str(uuid.uuid4())


class MessageEnvelope(BaseModel):
    """Immutable wrapper for messages over the wire.

    The payload is opaque bytes; business services own its shape. Retry
    metadata travels in ``headers`` (``attemptCount``, ``maxAttempts``).
    """

    model_config = ConfigDict(frozen=True)

    message_id: str | None = Field(default_factory=_new_message_id)
    message_type: str = Field(..., description="Semantic kind, e.g. 'order.created'")
    payload: bytes = b""
    headers: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = Field(default=None, ge=0, le=255)
    correlation_id: str | None = None
    reply_to: str | None = None
    expiration: int | None = Field(default=None, ge=0, description="TTL in ms")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def attempt_count(self) -> int:
        """Delivery attempt counter from headers (0 for a first delivery)."""
        return _int_header(self.headers, ATTEMPT_COUNT_HEADER, 0)

    @property
    def max_attempts(self) -> int:
        return _int_header(self.headers, MAX_ATTEMPTS_HEADER, DEFAULT_MAX_ATTEMPTS)

    def with_headers(self, **headers: Any) -> MessageEnvelope:
        """Return a copy with *headers* merged over the existing ones."""
        return self.model_copy(update={"headers": {**self.headers, **headers}})

    def with_options(self, options: PublishOptions | None) -> MessageEnvelope:
        """Return a copy with publish *options* applied on top of this envelope."""
        if options is None:
            return self
        update: dict[str, Any] = {}
        if options.priority is not None:
            update["priority"] = options.priority
        if options.expiration is not None:
            update["expiration"] = options.expiration
        if options.correlation_id is not None:
            update["correlation_id"] = options.correlation_id
        if options.reply_to is not None:
            update["reply_to"] = options.reply_to
        headers = dict(self.headers)
        headers.update(options.headers)
        if options.max_attempts is not None:
            headers[MAX_ATTEMPTS_HEADER] = options.max_attempts
        update["headers"] = headers
        return self.model_copy(update=update)


class PublishOptions(BaseModel):
    """Per-publish delivery options."""

    model_config = ConfigDict(frozen=True)

    priority: int | None = Field(default=None, ge=0, le=255)
    expiration: int | None = Field(default=None, ge=0, description="TTL in ms")
    correlation_id: str | None = None
    reply_to: str | None = None
    headers: dict[str, Any] = Field(default_factory=dict)
    persistent: bool = True
    mandatory: bool = False
    max_attempts: int | None = Field(default=None, ge=0)


def _int_header(headers: dict[str, Any], key: str, default: int) -> int:
    value = headers.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default

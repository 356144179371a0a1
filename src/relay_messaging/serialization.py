"""EnvelopeSerializer: map MessageEnvelope to and from AMQP messages."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import aio_pika

from .envelope import (
    ATTEMPT_COUNT_HEADER,
    DEFAULT_MAX_ATTEMPTS,
    MAX_ATTEMPTS_HEADER,
    TIMESTAMP_HEADER,
    MessageEnvelope,
    PublishOptions,
)
from .exceptions import MessagingSerializationError

if TYPE_CHECKING:
    from aio_pika.abc import AbstractIncomingMessage


def encode_json(data: Any) -> bytes:
    """Encode *data* as UTF-8 JSON bytes."""
    try:
        return json.dumps(data, default=str, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise MessagingSerializationError(f"Failed to encode payload: {e}") from e


def decode_json(payload: bytes | str) -> Any:
    """Decode a JSON payload."""
    try:
        return json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MessagingSerializationError(f"Failed to decode payload: {e}") from e


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class EnvelopeSerializer:
    """Converts envelopes to wire messages and back.

    The payload becomes the AMQP body untouched; everything else maps onto AMQP
    properties. Outgoing headers always carry ``timestamp``, ``attemptCount``
    and ``maxAttempts``.
    """

    def __init__(
        self,
        *,
        content_type: str = "application/json",
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._content_type = content_type
        self._default_max_attempts = default_max_attempts

    def wire_headers(self, envelope: MessageEnvelope) -> dict[str, Any]:
        """Return the header map sent on the wire for *envelope*."""
        headers: dict[str, Any] = {
            TIMESTAMP_HEADER: _epoch_ms(envelope.timestamp),
            ATTEMPT_COUNT_HEADER: 0,
            MAX_ATTEMPTS_HEADER: self._default_max_attempts,
        }
        headers.update(envelope.headers)
        return headers

    def to_amqp(
        self,
        envelope: MessageEnvelope,
        options: PublishOptions | None = None,
    ) -> aio_pika.Message:
        """Build an :class:`aio_pika.Message` for *envelope*."""
        persistent = options.persistent if options is not None else True
        return aio_pika.Message(
            body=envelope.payload,
            headers=self.wire_headers(envelope),
            content_type=self._content_type,
            delivery_mode=(
                aio_pika.DeliveryMode.PERSISTENT
                if persistent
                else aio_pika.DeliveryMode.NOT_PERSISTENT
            ),
            priority=envelope.priority,
            correlation_id=envelope.correlation_id,
            reply_to=envelope.reply_to,
            # aio-pika takes seconds and writes milliseconds on the wire
            expiration=(
                envelope.expiration / 1000 if envelope.expiration is not None else None
            ),
            message_id=envelope.message_id,
            timestamp=envelope.timestamp,
            type=envelope.message_type,
        )

    def from_amqp(self, message: AbstractIncomingMessage) -> MessageEnvelope:
        """Build an envelope from an inbound AMQP delivery."""
        try:
            raw_headers = message.headers or {}
            headers = {str(k): _decode_header_value(v) for k, v in raw_headers.items()}
            timestamp = message.timestamp or datetime.now(timezone.utc)
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
            return MessageEnvelope(
                message_id=message.message_id,
                message_type=message.type or message.routing_key or "",
                payload=bytes(message.body),
                headers=headers,
                priority=message.priority,
                correlation_id=message.correlation_id,
                reply_to=message.reply_to,
                timestamp=timestamp,
            )
        except (TypeError, ValueError) as e:
            raise MessagingSerializationError(f"Failed to decode message: {e}") from e


def _decode_header_value(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, list):
        return [_decode_header_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _decode_header_value(v) for k, v in value.items()}
    return value

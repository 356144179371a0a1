"""MessagePublisher: build envelopes and send them through a transport."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .envelope import TRACE_ID_HEADER, MessageEnvelope
from .exceptions import PublishRefusedError
from .serialization import encode_json
from .tracing import get_trace_id

if TYPE_CHECKING:
    from .envelope import PublishOptions
    from .ports import IMessagePublisher


def encode_payload(payload: Any) -> bytes:
    """Bytes pass through, strings are UTF-8 encoded, anything else is JSON."""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return encode_json(payload)


class MessagePublisher:
    """Fire-and-forget publishing on top of any :class:`IMessagePublisher`.

    Stamps the current trace id on outgoing messages. Callers only ever see
    transport failures, never downstream processing failures.
    """

    def __init__(self, transport: IMessagePublisher) -> None:
        self._transport = transport

    @property
    def transport(self) -> IMessagePublisher:
        return self._transport

    def build(
        self,
        message_type: str,
        payload: Any = b"",
        *,
        headers: dict[str, Any] | None = None,
        correlation_id: str | None = None,
        message_id: str | None = None,
    ) -> MessageEnvelope:
        """Build an envelope, encoding *payload* with :func:`encode_payload`."""
        merged = dict(headers or {})
        trace_id = get_trace_id()
        if trace_id is not None:
            merged.setdefault(TRACE_ID_HEADER, trace_id)
        fields: dict[str, Any] = {
            "message_type": message_type,
            "payload": encode_payload(payload),
            "headers": merged,
            "correlation_id": correlation_id,
        }
        if message_id is not None:
            fields["message_id"] = message_id
        return MessageEnvelope(**fields)

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        message_type: str,
        payload: Any = b"",
        options: PublishOptions | None = None,
        *,
        headers: dict[str, Any] | None = None,
    ) -> MessageEnvelope:
        """Publish and return the envelope that was sent.

        Raises ``MessagingConnectionError`` on transport failure and
        ``PublishRefusedError`` when the broker refuses the message.
        """
        envelope = self.build(message_type, payload, headers=headers)
        if not await self._transport.publish(exchange, routing_key, envelope, options):
            raise PublishRefusedError(
                f"Broker refused {message_type!r} to {exchange!r}/{routing_key!r}"
            )
        return envelope.with_options(options)

    async def publish_envelope(
        self,
        exchange: str,
        routing_key: str,
        envelope: MessageEnvelope,
        options: PublishOptions | None = None,
    ) -> bool:
        trace_id = get_trace_id()
        if trace_id is not None and TRACE_ID_HEADER not in envelope.headers:
            envelope = envelope.with_headers(**{TRACE_ID_HEADER: trace_id})
        return await self._transport.publish(exchange, routing_key, envelope, options)

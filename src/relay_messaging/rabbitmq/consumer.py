"""RabbitMQConsumer: bridges aio-pika deliveries to handlers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import aio_pika.exceptions

from ..context import DeliveryContext
from ..dispatch import dispatch
from ..exceptions import MessagingSerializationError

if TYPE_CHECKING:
    from aio_pika.abc import AbstractIncomingMessage

    from ..metrics import MessagingMetrics
    from ..ports import MessageHandler
    from ..serialization import EnvelopeSerializer

logger = logging.getLogger("relay.dispatch")


class RabbitMQConsumer:
    """Per-subscription callback handed to ``queue.consume``.

    Decodes each delivery, wraps it in a :class:`DeliveryContext` bound to the
    delivery's ack/nack, and dispatches it. Undecodable messages are rejected.
    """

    def __init__(
        self,
        queue: str,
        handler: MessageHandler,
        serializer: EnvelopeSerializer,
        *,
        metrics: MessagingMetrics | None = None,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self._serializer = serializer
        self._metrics = metrics

    async def __call__(self, message: AbstractIncomingMessage) -> None:
        try:
            envelope = self._serializer.from_amqp(message)
        except MessagingSerializationError:
            logger.exception(
                "Rejecting undecodable message %s on %s", message.message_id, self.queue
            )
            await message.reject(requeue=False)
            return

        context = DeliveryContext(
            envelope,
            queue=self.queue,
            exchange=message.exchange or "",
            routing_key=message.routing_key or "",
            redelivered=bool(message.redelivered),
            on_ack=message.ack,
            on_nack=lambda requeue: message.nack(requeue=requeue),
        )
        try:
            await dispatch(self.handler, envelope, context, metrics=self._metrics)
        except (
            aio_pika.exceptions.AMQPError,
            aio_pika.exceptions.ChannelInvalidStateError,
            ConnectionError,
        ) as e:
            # Settling failed because the channel went away; the broker will
            # redeliver the unacked message after reconnect.
            logger.warning(
                "Could not settle message %s on %s: %s",
                envelope.message_id,
                self.queue,
                e,
            )

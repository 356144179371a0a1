"""Ports implemented by transports (RabbitMQ, in-memory)."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .context import DeliveryContext
    from .envelope import MessageEnvelope, PublishOptions
    from .topology import ConsumeOptions, Topology

MessageHandler = Callable[["MessageEnvelope", "DeliveryContext"], Awaitable[None]]


@runtime_checkable
class IMessagePublisher(Protocol):
    """Port for publishing envelopes to a broker destination."""

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        envelope: MessageEnvelope,
        options: PublishOptions | None = None,
    ) -> bool:
        """
        Publish *envelope* to *exchange* with *routing_key*.

        Returns True when the broker confirmed the message, False when it
        refused it. Transport failures raise ``MessagingConnectionError``.
        """
        ...


@runtime_checkable
class IMessageConsumer(Protocol):
    """Port for subscribing handlers to queues."""

    async def consume(
        self,
        queue: str,
        handler: MessageHandler,
        options: ConsumeOptions | None = None,
    ) -> str:
        """
        Register *handler* for every message delivered on *queue*.

        Returns the consumer tag, usable with :meth:`cancel`.
        """
        ...

    async def cancel(self, consumer_tag: str) -> None:
        """Stop a subscription; it is not restored after reconnect."""
        ...


@runtime_checkable
class IMessageTransport(IMessagePublisher, IMessageConsumer, Protocol):
    """A connected broker: publish, consume, declare topology."""

    def is_connected(self) -> bool: ...

    async def declare(self, topology: Topology) -> None: ...

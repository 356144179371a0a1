"""Broker topology: exchanges, queues and bindings, declared idempotently."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

import aio_pika
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel

DEFAULT_EXCHANGE = ""


class ExchangeKind(str, Enum):
    """Routing topology of an exchange."""

    DIRECT = "direct"
    TOPIC = "topic"
    FANOUT = "fanout"
    HEADERS = "headers"

    def to_aio_pika(self) -> aio_pika.ExchangeType:
        return aio_pika.ExchangeType(self.value)


class ExchangeSpec(BaseModel):
    """Declaration of a named exchange."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: ExchangeKind = ExchangeKind.TOPIC
    durable: bool = True
    arguments: dict[str, Any] = Field(default_factory=dict)


class QueueSpec(BaseModel):
    """Declaration of a queue and its broker-side arguments."""

    model_config = ConfigDict(frozen=True)

    name: str
    durable: bool = True
    exclusive: bool = False
    auto_delete: bool = False
    max_priority: int | None = Field(default=None, ge=1, le=255)
    dead_letter_exchange: str | None = None
    dead_letter_routing_key: str | None = None
    message_ttl: int | None = Field(default=None, ge=0, description="TTL in ms")
    expires: int | None = Field(default=None, ge=1, description="Idle expiry in ms")
    single_active_consumer: bool = False
    extra_arguments: dict[str, Any] = Field(default_factory=dict)

    def arguments(self) -> dict[str, Any]:
        """Return the ``x-*`` arguments for the queue declaration."""
        args: dict[str, Any] = {}
        if self.max_priority is not None:
            args["x-max-priority"] = self.max_priority
        if self.dead_letter_exchange is not None:
            args["x-dead-letter-exchange"] = self.dead_letter_exchange
        if self.dead_letter_routing_key is not None:
            args["x-dead-letter-routing-key"] = self.dead_letter_routing_key
        if self.message_ttl is not None:
            args["x-message-ttl"] = self.message_ttl
        if self.expires is not None:
            args["x-expires"] = self.expires
        if self.single_active_consumer:
            args["x-single-active-consumer"] = True
        args.update(self.extra_arguments)
        return args


class BindingSpec(BaseModel):
    """Binding from an exchange to a queue."""

    model_config = ConfigDict(frozen=True)

    queue: str
    exchange: str
    routing_key: str = ""
    arguments: dict[str, Any] = Field(default_factory=dict)


class ConsumeOptions(BaseModel):
    """Options for a subscription."""

    model_config = ConfigDict(frozen=True)

    prefetch_count: int | None = Field(default=None, ge=1)
    exclusive: bool = False
    consumer_priority: int | None = None
    declare: QueueSpec | None = None


class Topology(BaseModel):
    """A set of exchanges, queues and bindings declared together."""

    model_config = ConfigDict(frozen=True)

    exchanges: tuple[ExchangeSpec, ...] = ()
    queues: tuple[QueueSpec, ...] = ()
    bindings: tuple[BindingSpec, ...] = ()

    def merge(self, *others: Topology) -> Topology:
        """Combine topologies, dropping repeated declarations."""
        exchanges = list(self.exchanges)
        queues = list(self.queues)
        bindings = list(self.bindings)
        for other in others:
            exchanges.extend(e for e in other.exchanges if e not in exchanges)
            queues.extend(q for q in other.queues if q not in queues)
            bindings.extend(b for b in other.bindings if b not in bindings)
        return Topology(
            exchanges=tuple(exchanges), queues=tuple(queues), bindings=tuple(bindings)
        )

    def queue(self, name: str) -> QueueSpec | None:
        return next((q for q in self.queues if q.name == name), None)

    async def declare(self, channel: AbstractChannel) -> None:
        """Declare every exchange, queue and binding on *channel*."""
        exchanges: dict[str, Any] = {}
        for spec in self.exchanges:
            exchanges[spec.name] = await channel.declare_exchange(
                spec.name,
                spec.kind.to_aio_pika(),
                durable=spec.durable,
                arguments=spec.arguments or None,
            )
        queues: dict[str, Any] = {}
        for qspec in self.queues:
            queues[qspec.name] = await declare_queue(channel, qspec)
        for binding in self.bindings:
            queue = queues.get(binding.queue)
            if queue is None:
                queue = await channel.get_queue(binding.queue, ensure=True)
            exchange = exchanges.get(binding.exchange, binding.exchange)
            await queue.bind(
                exchange,
                routing_key=binding.routing_key,
                arguments=binding.arguments or None,
            )


async def declare_queue(channel: AbstractChannel, spec: QueueSpec) -> Any:
    """Declare a single queue from *spec* and return the aio-pika queue."""
    return await channel.declare_queue(
        spec.name,
        durable=spec.durable,
        exclusive=spec.exclusive,
        auto_delete=spec.auto_delete,
        arguments=spec.arguments() or None,
    )


def retry_queue_name(queue: str, attempt: int, suffix: str = ".retry") -> str:
    """Delay queue holding retries scheduled after the 0-based *attempt*."""
    return f"{queue}{suffix}.{attempt}"


def dead_letter_queue_name(queue: str) -> str:
    return f"{queue}.dlq"


def work_queue_topology(
    queue: str,
    *,
    exchange: str | None = None,
    exchange_kind: ExchangeKind = ExchangeKind.TOPIC,
    routing_keys: tuple[str, ...] | list[str] = (),
    dead_letter_exchange: str = "dlx",
    max_priority: int | None = 10,
    message_ttl: int | None = None,
    single_active_consumer: bool = False,
    with_retry: bool = True,
    retry_levels: int = 3,
    retry_suffix: str = ".retry",
) -> Topology:
    """Build a durable work queue with its dead-letter and delay queues.

    - ``queue`` dead-letters rejected messages to *dead_letter_exchange* with
      routing key ``<queue>.dlq``; the ``<queue>.dlq`` queue holds them.
    - ``<queue><retry_suffix>.<n>`` for ``n`` in ``range(retry_levels)`` have
      no consumers: a retry scheduled after attempt ``n`` waits there for its
      per-message expiration, then dead-letters back into ``queue`` through
      the default exchange. The broker only expires messages at the head of a
      queue, so each backoff level gets its own queue. Declare at least as
      many levels as the largest ``max_retries`` used on ``queue``.
    """
    dlq = dead_letter_queue_name(queue)
    exchanges = [ExchangeSpec(name=dead_letter_exchange, kind=ExchangeKind.DIRECT)]
    queues = [
        QueueSpec(
            name=queue,
            max_priority=max_priority,
            dead_letter_exchange=dead_letter_exchange,
            dead_letter_routing_key=dlq,
            message_ttl=message_ttl,
            single_active_consumer=single_active_consumer,
        ),
        QueueSpec(name=dlq),
    ]
    bindings = [BindingSpec(queue=dlq, exchange=dead_letter_exchange, routing_key=dlq)]
    if with_retry:
        queues.extend(
            QueueSpec(
                name=retry_queue_name(queue, level, retry_suffix),
                dead_letter_exchange=DEFAULT_EXCHANGE,
                dead_letter_routing_key=queue,
            )
            for level in range(retry_levels)
        )
    if exchange is not None:
        exchanges.append(ExchangeSpec(name=exchange, kind=exchange_kind))
        keys = list(routing_keys)
        if not keys:
            keys = ["#"] if exchange_kind is ExchangeKind.TOPIC else [queue]
        bindings.extend(
            BindingSpec(queue=queue, exchange=exchange, routing_key=key) for key in keys
        )
    return Topology(
        exchanges=tuple(exchanges), queues=tuple(queues), bindings=tuple(bindings)
    )


def saga_topology(
    exchange: str = "saga",
    *,
    queue: str | None = None,
    routing_keys: tuple[str, ...] = ("saga.#",),
) -> Topology:
    """Declare the saga event exchange and, optionally, a queue listening on it."""
    exchanges = (ExchangeSpec(name=exchange, kind=ExchangeKind.TOPIC),)
    if queue is None:
        return Topology(exchanges=exchanges)
    return Topology(
        exchanges=exchanges,
        queues=(QueueSpec(name=queue),),
        bindings=tuple(
            BindingSpec(queue=queue, exchange=exchange, routing_key=key)
            for key in routing_keys
        ),
    )

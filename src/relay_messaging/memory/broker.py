"""InMemoryBroker: broker semantics in-process, for tests and local runs.

Models exchanges (direct, topic, fanout, headers and the default exchange),
durable queues with priorities, per-queue and per-message TTL, dead-letter
exchanges, prefetch-bounded consumers, and ack/nack/reject.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..context import DeliveryContext
from ..dispatch import dispatch
from ..exceptions import MessagingConnectionError
from ..serialization import EnvelopeSerializer
from ..topology import (
    DEFAULT_EXCHANGE,
    BindingSpec,
    ConsumeOptions,
    ExchangeKind,
    ExchangeSpec,
    QueueSpec,
    Topology,
)

if TYPE_CHECKING:
    from ..envelope import MessageEnvelope, PublishOptions
    from ..metrics import MessagingMetrics
    from ..ports import MessageHandler

logger = logging.getLogger("relay.memory")


@dataclass(frozen=True)
class PublishedMessage:
    """A message as it was handed to :meth:`InMemoryBroker.publish`."""

    exchange: str
    routing_key: str
    envelope: MessageEnvelope
    options: PublishOptions | None = None


@dataclass(eq=False)
class _Message:
    envelope: MessageEnvelope
    exchange: str
    routing_key: str
    redelivered: bool = False
    deadline: float | None = None


@dataclass(eq=False)
class _Consumer:
    tag: str
    queue: str
    handler: MessageHandler
    prefetch: int
    exclusive: bool = False
    in_flight: int = 0


@dataclass
class _Queue:
    spec: QueueSpec
    ready: list[_Message] = field(default_factory=list)
    consumers: list[_Consumer] = field(default_factory=list)
    cursor: int = 0
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    def priority_of(self, message: _Message) -> int:
        if self.spec.max_priority is None:
            return 0
        return min(message.envelope.priority or 0, self.spec.max_priority)

    def push(self, message: _Message) -> None:
        priority = self.priority_of(message)
        index = len(self.ready)
        # Stable: after every message of equal or higher priority.
        while index > 0 and self.priority_of(self.ready[index - 1]) < priority:
            index -= 1
        self.ready.insert(index, message)

    def next_consumer(self) -> _Consumer | None:
        candidates = self._candidates()
        if not candidates:
            return None
        for offset in range(len(candidates)):
            consumer = candidates[(self.cursor + offset) % len(candidates)]
            if consumer.in_flight < consumer.prefetch:
                self.cursor = (self.cursor + offset + 1) % len(candidates)
                return consumer
        return None

    def has_capacity(self) -> bool:
        return any(c.in_flight < c.prefetch for c in self._candidates())

    def _candidates(self) -> list[_Consumer]:
        if self.spec.single_active_consumer:
            return self.consumers[:1]
        return self.consumers


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic match: ``*`` is one word, ``#`` is zero or more words."""
    return _match_words(pattern.split("."), routing_key.split("."))


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head in ("*", words[0]):
        return _match_words(rest, words[1:])
    return False


def _headers_match(arguments: dict[str, Any], headers: dict[str, Any]) -> bool:
    mode = str(arguments.get("x-match", "all")).lower()
    wanted = {k: v for k, v in arguments.items() if not k.startswith("x-")}
    if not wanted:
        return True
    hits = [k in headers and headers[k] == v for k, v in wanted.items()]
    return any(hits) if mode.startswith("any") else all(hits)


class InMemoryBroker:
    """In-process implementation of :class:`IMessageTransport`.

    Deliveries run as asyncio tasks; use :meth:`wait_idle` to let in-flight
    work, pending redeliveries and TTL expiries settle before asserting.
    """

    def __init__(
        self,
        *,
        prefetch_count: int = 10,
        serializer: EnvelopeSerializer | None = None,
        metrics: MessagingMetrics | None = None,
    ) -> None:
        self._prefetch_count = prefetch_count
        self._serializer = serializer or EnvelopeSerializer()
        self._metrics = metrics
        self._exchanges: dict[str, ExchangeSpec] = {
            DEFAULT_EXCHANGE: ExchangeSpec(
                name=DEFAULT_EXCHANGE, kind=ExchangeKind.DIRECT
            )
        }
        self._bindings: list[BindingSpec] = []
        self._queues: dict[str, _Queue] = {}
        self._consumers: dict[str, _Consumer] = {}
        self._published: list[PublishedMessage] = []
        self._dropped: list[tuple[str, MessageEnvelope]] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._connected = True
        self._tags = itertools.count(1)

    # ── Connection surface ──────────────────────────────────────────

    async def connect(self) -> None:
        self._connected = True
        for queue in self._queues.values():
            self._pump(queue)

    async def disconnect(self) -> None:
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    async def health_check(self) -> bool:
        return self._connected

    # ── Topology ────────────────────────────────────────────────────

    async def declare(self, topology: Topology) -> None:
        for exchange in topology.exchanges:
            self._exchanges.setdefault(exchange.name, exchange)
        for spec in topology.queues:
            self._declare_queue(spec)
        for binding in topology.bindings:
            if binding.exchange not in self._exchanges:
                raise MessagingConnectionError(
                    f"Exchange {binding.exchange!r} not found"
                )
            if binding.queue not in self._queues:
                raise MessagingConnectionError(f"Queue {binding.queue!r} not found")
            if binding not in self._bindings:
                self._bindings.append(binding)

    def _declare_queue(self, spec: QueueSpec) -> _Queue:
        queue = self._queues.get(spec.name)
        if queue is None:
            queue = self._queues[spec.name] = _Queue(spec=spec)
        return queue

    async def purge_queue(self, name: str) -> int:
        queue = self._require_queue(name)
        count = len(queue.ready)
        queue.ready.clear()
        self._schedule_expiry(queue)
        return count

    def _require_queue(self, name: str) -> _Queue:
        queue = self._queues.get(name)
        if queue is None:
            raise MessagingConnectionError(f"Queue {name!r} not found")
        return queue

    # ── Publish and routing ─────────────────────────────────────────

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        envelope: MessageEnvelope,
        options: PublishOptions | None = None,
    ) -> bool:
        if not self._connected:
            raise MessagingConnectionError(
                f"Not connected; cannot publish {envelope.message_type!r}"
            )
        if exchange not in self._exchanges:
            raise MessagingConnectionError(f"Exchange {exchange!r} not found")
        envelope = envelope.with_options(options)
        envelope = envelope.model_copy(
            update={"headers": self._serializer.wire_headers(envelope)}
        )
        self._published.append(
            PublishedMessage(exchange, routing_key, envelope, options)
        )
        queues = self._route(exchange, routing_key, envelope.headers)
        if not queues:
            logger.debug(
                "Unroutable message %s to %r/%r",
                envelope.message_id,
                exchange,
                routing_key,
            )
            return not (options is not None and options.mandatory)
        for queue in queues:
            self._enqueue(queue, _Message(envelope, exchange, routing_key))
        return True

    def _route(
        self, exchange: str, routing_key: str, headers: dict[str, Any]
    ) -> list[_Queue]:
        if exchange == DEFAULT_EXCHANGE:
            queue = self._queues.get(routing_key)
            return [queue] if queue is not None else []
        kind = self._exchanges[exchange].kind
        matched: list[_Queue] = []
        for binding in self._bindings:
            if binding.exchange != exchange:
                continue
            if kind is ExchangeKind.FANOUT:
                hit = True
            elif kind is ExchangeKind.TOPIC:
                hit = topic_matches(binding.routing_key, routing_key)
            elif kind is ExchangeKind.HEADERS:
                hit = _headers_match(binding.arguments, headers)
            else:
                hit = binding.routing_key == routing_key
            queue = self._queues.get(binding.queue)
            if hit and queue is not None and queue not in matched:
                matched.append(queue)
        return matched

    def _enqueue(self, queue: _Queue, message: _Message) -> None:
        ttls = [
            t
            for t in (message.envelope.expiration, queue.spec.message_ttl)
            if t is not None
        ]
        if ttls:
            message.deadline = asyncio.get_running_loop().time() + min(ttls) / 1000
        queue.push(message)
        self._pump(queue)
        self._schedule_expiry(queue)

    def _schedule_expiry(self, queue: _Queue) -> None:
        # Like RabbitMQ, only the message at the head of a queue can expire.
        if queue.timer is not None:
            queue.timer.cancel()
            queue.timer = None
        if queue.ready and queue.ready[0].deadline is not None:
            queue.timer = asyncio.get_running_loop().call_at(
                queue.ready[0].deadline, self._expire_head, queue
            )

    def _expire_head(self, queue: _Queue) -> None:
        queue.timer = None
        if not queue.ready:
            return
        now = asyncio.get_running_loop().time()
        expired = [queue.ready.pop(0)]
        while queue.ready:
            deadline = queue.ready[0].deadline
            if deadline is None or deadline > now:
                break
            expired.append(queue.ready.pop(0))
        for message in expired:
            self._dead_letter(queue, message, "expired")
        self._schedule_expiry(queue)

    def _dead_letter(self, queue: _Queue, message: _Message, reason: str) -> None:
        spec = queue.spec
        dlx = spec.dead_letter_exchange
        if dlx is None or dlx not in self._exchanges:
            logger.error(
                "Dropping message %s %s from %s: no dead-letter exchange",
                message.envelope.message_id,
                reason,
                spec.name,
            )
            self._dropped.append((spec.name, message.envelope))
            return
        deaths = list(message.envelope.headers.get("x-death") or [])
        entry = next(
            (
                d
                for d in deaths
                if d.get("queue") == spec.name and d.get("reason") == reason
            ),
            None,
        )
        if entry is None:
            deaths.insert(
                0,
                {
                    "queue": spec.name,
                    "reason": reason,
                    "count": 1,
                    "exchange": message.exchange,
                    "routing-keys": [message.routing_key],
                },
            )
        else:
            deaths.remove(entry)
            deaths.insert(0, {**entry, "count": int(entry.get("count", 0)) + 1})
        # The per-message expiration is dropped so it cannot expire again.
        envelope = message.envelope.model_copy(
            update={
                "headers": {**message.envelope.headers, "x-death": deaths},
                "expiration": None,
            }
        )
        routing_key = spec.dead_letter_routing_key or message.routing_key
        targets = self._route(dlx, routing_key, envelope.headers)
        if not targets:
            logger.error(
                "Dead-letter route %r/%r for %s matched no queue; message dropped",
                dlx,
                routing_key,
                message.envelope.message_id,
            )
            self._dropped.append((spec.name, envelope))
        for target in targets:
            self._enqueue(target, _Message(envelope, dlx, routing_key))

    # ── Consume ─────────────────────────────────────────────────────

    async def consume(
        self,
        queue: str,
        handler: MessageHandler,
        options: ConsumeOptions | None = None,
    ) -> str:
        options = options or ConsumeOptions()
        if options.declare is not None:
            self._declare_queue(options.declare)
        target = self._require_queue(queue)
        exclusive_taken = any(c.exclusive for c in target.consumers)
        if exclusive_taken or (options.exclusive and target.consumers):
            raise MessagingConnectionError(f"Queue {queue!r} has an exclusive consumer")
        consumer = _Consumer(
            tag=f"memory-{next(self._tags)}-{uuid.uuid4().hex[:8]}",
            queue=queue,
            handler=handler,
            prefetch=options.prefetch_count or self._prefetch_count,
            exclusive=options.exclusive,
        )
        target.consumers.append(consumer)
        self._consumers[consumer.tag] = consumer
        self._pump(target)
        return consumer.tag

    async def cancel(self, consumer_tag: str) -> None:
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is None:
            return
        queue = self._queues.get(consumer.queue)
        if queue is not None and consumer in queue.consumers:
            queue.consumers.remove(consumer)

    def _pump(self, queue: _Queue) -> None:
        if not self._connected:
            return
        popped = False
        while queue.ready:
            consumer = queue.next_consumer()
            if consumer is None:
                break
            message = queue.ready.pop(0)
            popped = True
            consumer.in_flight += 1
            task = asyncio.get_running_loop().create_task(
                self._deliver(queue, consumer, message)
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        if popped:
            self._schedule_expiry(queue)

    async def _deliver(
        self, queue: _Queue, consumer: _Consumer, message: _Message
    ) -> None:
        async def on_ack() -> None:
            consumer.in_flight -= 1
            self._pump(queue)

        async def on_nack(requeue: bool) -> None:
            consumer.in_flight -= 1
            if requeue:
                message.redelivered = True
                queue.ready.insert(0, message)
            else:
                self._dead_letter(queue, message, "rejected")
            self._pump(queue)
            self._schedule_expiry(queue)

        context = DeliveryContext(
            message.envelope,
            queue=queue.spec.name,
            exchange=message.exchange,
            routing_key=message.routing_key,
            redelivered=message.redelivered,
            on_ack=on_ack,
            on_nack=on_nack,
        )
        await dispatch(
            consumer.handler, message.envelope, context, metrics=self._metrics
        )

    # ── Inspection helpers ──────────────────────────────────────────

    def get_published(
        self,
        *,
        exchange: str | None = None,
        routing_key: str | None = None,
        message_type: str | None = None,
    ) -> list[PublishedMessage]:
        """Return published messages in order, optionally filtered."""
        return [
            p
            for p in self._published
            if (exchange is None or p.exchange == exchange)
            and (routing_key is None or p.routing_key == routing_key)
            and (message_type is None or p.envelope.message_type == message_type)
        ]

    def assert_published(
        self,
        message_type: str,
        count: int = 1,
        exchange: str | None = None,
    ) -> None:
        """Assert that exactly *count* messages of *message_type* were published."""
        matching = self.get_published(exchange=exchange, message_type=message_type)
        assert len(matching) == count, (
            f"Expected {count} message(s) with message_type={message_type!r}, "
            f"got {len(matching)}. Published: "
            f"{[p.envelope.message_type for p in self._published]}"
        )

    def messages(self, queue: str) -> list[MessageEnvelope]:
        """Envelopes currently ready (not in flight) in *queue*."""
        return [m.envelope for m in self._require_queue(queue).ready]

    @property
    def dropped(self) -> list[tuple[str, MessageEnvelope]]:
        """Messages discarded because they had nowhere to dead-letter to."""
        return list(self._dropped)

    def _busy(self) -> bool:
        if self._tasks:
            return True
        for queue in self._queues.values():
            if queue.timer is not None:
                return True
            if queue.ready and queue.has_capacity() and self._connected:
                return True
        return False

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait until no delivery is in flight and no TTL expiry is pending."""
        async def _poll() -> None:
            while self._busy():
                await asyncio.sleep(0.001)

        await asyncio.wait_for(_poll(), timeout)

    async def close(self) -> None:
        """Cancel pending deliveries and timers (test teardown)."""
        for queue in self._queues.values():
            if queue.timer is not None:
                queue.timer.cancel()
                queue.timer = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

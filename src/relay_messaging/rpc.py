"""Request/reply over the broker with correlation ids and deadlines."""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from typing import TYPE_CHECKING, Any

from .envelope import ERROR_HEADER, ERROR_TYPE_HEADER, MessageEnvelope, PublishOptions
from .exceptions import (
    DuplicateCorrelationError,
    MessagingConnectionError,
    MessagingTimeoutError,
    PublishRefusedError,
    RemoteHandlerError,
)
from .publisher import encode_payload
from .topology import DEFAULT_EXCHANGE, ConsumeOptions, QueueSpec

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .config import MessagingSettings
    from .context import DeliveryContext
    from .metrics import MessagingMetrics
    from .ports import IMessagePublisher, IMessageTransport, MessageHandler

logger = logging.getLogger("relay.rpc")


class RequestReplyCorrelator:
    """Pairs outbound requests with replies on a shared per-caller reply queue.

    Each pending call owns one entry in the waiting table keyed by correlation
    id. The entry is removed when the reply arrives, when the call times out,
    or when publishing fails; replies without a waiter are logged and dropped.
    """

    def __init__(
        self,
        transport: IMessageTransport,
        *,
        reply_queue: str | None = None,
        default_timeout: float = 30.0,
        metrics: MessagingMetrics | None = None,
    ) -> None:
        self._transport = transport
        self._reply_queue = reply_queue or f"rpc.reply.{uuid.uuid4().hex}"
        self._default_timeout = default_timeout
        self._metrics = metrics
        self._pending: dict[str, asyncio.Future[MessageEnvelope]] = {}
        self._consumer_tag: str | None = None
        self._start_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls, transport: IMessageTransport, settings: MessagingSettings, **kwargs: Any
    ) -> RequestReplyCorrelator:
        return cls(transport, default_timeout=settings.rpc_timeout, **kwargs)

    @property
    def reply_queue(self) -> str:
        return self._reply_queue

    @property
    def pending_count(self) -> int:
        """Number of calls currently waiting for a reply."""
        return len(self._pending)

    async def start(self) -> None:
        """Declare the exclusive reply queue and start consuming it."""
        async with self._start_lock:
            if self._consumer_tag is not None:
                return
            spec = QueueSpec(
                name=self._reply_queue, durable=False, exclusive=True, auto_delete=True
            )
            self._consumer_tag = await self._transport.consume(
                self._reply_queue,
                self._on_reply,
                ConsumeOptions(declare=spec, exclusive=True),
            )
            logger.debug("Reply queue %s ready", self._reply_queue)

    async def stop(self) -> None:
        """Stop consuming replies and fail every pending call."""
        tag, self._consumer_tag = self._consumer_tag, None
        if tag is not None:
            await self._transport.cancel(tag)
        pending, self._pending = self._pending, {}
        for correlation_id, future in pending.items():
            if not future.done():
                future.set_exception(
                    MessagingConnectionError(
                        f"Correlator stopped while {correlation_id} was pending"
                    )
                )

    async def call(
        self,
        exchange: str,
        routing_key: str,
        request: MessageEnvelope,
        timeout: float | None = None,
    ) -> MessageEnvelope:
        """Publish *request* and wait for the matching reply.

        Raises:
            MessagingTimeoutError: no reply within *timeout* seconds.
            RemoteHandlerError: the responder replied with an error.
            DuplicateCorrelationError: *request* reuses a pending correlation id.
            MessagingConnectionError: the request could not be published.
        """
        if self._consumer_tag is None:
            await self.start()
        timeout = self._default_timeout if timeout is None else timeout
        correlation_id = request.correlation_id or str(uuid.uuid4())
        if correlation_id in self._pending:
            raise DuplicateCorrelationError(correlation_id)
        future: asyncio.Future[MessageEnvelope] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[correlation_id] = future
        request = request.model_copy(
            update={"correlation_id": correlation_id, "reply_to": self._reply_queue}
        )
        try:
            if not await self._transport.publish(exchange, routing_key, request):
                raise PublishRefusedError(
                    f"Broker refused request {correlation_id} to "
                    f"{exchange!r}/{routing_key!r}"
                )
            reply = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as e:
            self._record("timeout")
            logger.warning(
                "Request %s (%s) to %r/%r timed out after %.3fs",
                correlation_id,
                request.message_type,
                exchange,
                routing_key,
                timeout,
            )
            raise MessagingTimeoutError(f"rpc:{routing_key}", timeout) from e
        except RemoteHandlerError:
            self._record("error")
            raise
        finally:
            if self._pending.get(correlation_id) is future:
                del self._pending[correlation_id]
        self._record("success")
        return reply

    async def _on_reply(
        self, envelope: MessageEnvelope, context: DeliveryContext
    ) -> None:
        await context.ack()
        correlation_id = envelope.correlation_id
        future = self._pending.pop(correlation_id, None) if correlation_id else None
        if future is None or future.done():
            logger.info(
                "Discarding reply %s for correlation id %s: no waiter "
                "(late or unknown)",
                envelope.message_id,
                correlation_id,
            )
            return
        error = envelope.headers.get(ERROR_HEADER)
        if error is not None:
            future.set_exception(
                RemoteHandlerError(str(error), envelope.headers.get(ERROR_TYPE_HEADER))
            )
        else:
            future.set_result(envelope)

    def _record(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_rpc(outcome)


async def send_reply(
    publisher: IMessagePublisher,
    request: MessageEnvelope,
    payload: Any = b"",
    *,
    message_type: str | None = None,
    error: BaseException | str | None = None,
) -> bool:
    """Publish a reply to ``request.reply_to`` carrying its correlation id.

    With *error*, the reply carries ``x-error``/``x-error-type`` headers and the
    caller's :meth:`RequestReplyCorrelator.call` raises ``RemoteHandlerError``.
    Returns False when the request has no reply destination.
    """
    if not request.reply_to:
        logger.warning(
            "Request %s (%s) has no reply_to; reply dropped",
            request.message_id,
            request.message_type,
        )
        return False
    headers: dict[str, Any] = {}
    if error is not None:
        headers[ERROR_HEADER] = str(error)
        if isinstance(error, BaseException):
            headers[ERROR_TYPE_HEADER] = type(error).__name__
    reply = MessageEnvelope(
        message_type=message_type or f"{request.message_type}.reply",
        payload=encode_payload(payload),
        headers=headers,
        correlation_id=request.correlation_id,
    )
    return await publisher.publish(
        DEFAULT_EXCHANGE, request.reply_to, reply, PublishOptions(persistent=False)
    )


def responder(
    publisher: IMessagePublisher,
    func: Callable[[MessageEnvelope], Awaitable[Any]],
) -> MessageHandler:
    """Turn ``func(request) -> payload`` into a handler that replies.

    Exceptions raised by *func* are forwarded to the caller as error replies
    and the request is acked, so business errors are not retried.
    """

    @functools.wraps(func)
    async def handle(envelope: MessageEnvelope, context: DeliveryContext) -> None:
        try:
            result = await func(envelope)
        except Exception as exc:
            logger.info(
                "Request %s (%s) failed with %s; replying with error",
                envelope.message_id,
                envelope.message_type,
                type(exc).__name__,
            )
            await send_reply(publisher, envelope, error=exc)
        else:
            await send_reply(publisher, envelope, result)
        await context.ack()

    return handle

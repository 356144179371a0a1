"""Consumer dispatch: run a handler under the acknowledgment contract."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from .envelope import TRACE_ID_HEADER
from .exceptions import RetryExhaustedError
from .tracing import reset_trace_id, set_trace_id

if TYPE_CHECKING:
    from .context import DeliveryContext
    from .envelope import MessageEnvelope
    from .metrics import MessagingMetrics
    from .ports import MessageHandler

logger = logging.getLogger("relay.dispatch")


async def dispatch(
    handler: MessageHandler,
    envelope: MessageEnvelope,
    context: DeliveryContext,
    *,
    metrics: MessagingMetrics | None = None,
) -> None:
    """Invoke *handler* once for this delivery and guarantee it gets settled.

    - Handler returns without a terminal action: the delivery is acked.
    - Handler raises without a terminal action: the delivery is rejected
      (dead-lettered), so it never blocks the prefetch window.

    Exceptions never propagate to the transport.
    """
    trace_id = envelope.headers.get(TRACE_ID_HEADER) or envelope.message_id
    token = set_trace_id(str(trace_id) if trace_id is not None else None)
    start = time.monotonic()
    try:
        await handler(envelope, context)
    except RetryExhaustedError as e:
        logger.error(
            "Retries exhausted for message %s (%s) on %s after %d attempt(s); "
            "dead-lettered. correlation_id=%s",
            envelope.message_id,
            envelope.message_type,
            context.queue,
            e.attempts,
            envelope.correlation_id,
        )
        if not context.settled:
            await context.reject()
    except Exception:
        logger.exception(
            "Handler failed for message %s (%s) on %s, attempt=%d, "
            "correlation_id=%s",
            envelope.message_id,
            envelope.message_type,
            context.queue,
            envelope.attempt_count,
            envelope.correlation_id,
        )
        if not context.settled:
            await context.reject()
    else:
        if not context.settled:
            await context.ack()
    finally:
        reset_trace_id(token)
        if metrics is not None:
            if context.retry_scheduled:
                outcome = "retried"
            elif context.outcome is not None:
                outcome = context.outcome.value
            else:
                outcome = "unsettled"
            metrics.observe_delivery(
                context.queue,
                envelope.message_type,
                outcome,
                time.monotonic() - start,
            )


class MessageRouter:
    """Routes deliveries to handlers by ``message_type``.

    Usable directly as a handler::

        router = MessageRouter()
        router.register("order.created", on_order_created)
        await connection.consume("orders.commands", router)
    """

    def __init__(self, fallback: MessageHandler | None = None) -> None:
        self._handlers: dict[str, MessageHandler] = {}
        self._fallback = fallback

    def register(self, message_type: str, handler: MessageHandler) -> None:
        """Register *handler* for *message_type*; one handler per type."""
        if message_type in self._handlers:
            raise ValueError(f"Handler already registered for {message_type!r}")
        self._handlers[message_type] = handler

    def route(self, message_type: str) -> MessageHandler | None:
        return self._handlers.get(message_type, self._fallback)

    @property
    def message_types(self) -> list[str]:
        return sorted(self._handlers)

    async def __call__(
        self, envelope: MessageEnvelope, context: DeliveryContext
    ) -> None:
        handler = self.route(envelope.message_type)
        if handler is None:
            logger.error(
                "No handler for message type %r on %s; rejecting message %s",
                envelope.message_type,
                context.queue,
                envelope.message_id,
            )
            await context.reject()
            return
        await handler(envelope, context)

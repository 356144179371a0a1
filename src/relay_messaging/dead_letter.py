"""DeadLetterHandler: terminal routing of messages whose retries ran out."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .envelope import ATTEMPT_COUNT_HEADER, LAST_ERROR_HEADER
from .exceptions import RetryExhaustedError
from .topology import ConsumeOptions

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from .context import DeliveryContext
    from .envelope import MessageEnvelope
    from .metrics import MessagingMetrics
    from .ports import IMessageTransport

logger = logging.getLogger("relay.retry")


class DeadLetterHandler:
    """Routes a delivery to its queue's dead-letter target.

    The delivery is rejected without requeue, so the broker's dead-letter
    binding moves it to the per-domain DLQ. An optional async callback sees the
    envelope first (alerting, audit). ``route()`` always ends by raising
    :class:`RetryExhaustedError`.
    """

    def __init__(
        self,
        on_dead_letter: (
            Callable[
                [MessageEnvelope, str, BaseException | None], Coroutine[Any, Any, None]
            ]
            | None
        ) = None,
        *,
        metrics: MessagingMetrics | None = None,
    ) -> None:
        """Configure dead-letter handling.

        Args:
            on_dead_letter: Async callable (envelope, reason, exception) -> None,
                awaited before the delivery is rejected. Its failures are logged
                and do not prevent dead-lettering.
            metrics: Optional metrics sink.
        """
        self._on_dead_letter = on_dead_letter
        self._metrics = metrics

    async def route(
        self,
        envelope: MessageEnvelope,
        context: DeliveryContext,
        reason: str,
        exception: BaseException | None = None,
    ) -> None:
        """Reject *context* towards dead-letter, then raise RetryExhaustedError."""
        if self._on_dead_letter is not None:
            try:
                await self._on_dead_letter(envelope, reason, exception)
            except Exception:
                logger.exception(
                    "Dead-letter callback failed for message %s", envelope.message_id
                )
        await context.reject()
        if self._metrics is not None:
            self._metrics.record_dead_letter(context.queue)
        raise RetryExhaustedError(
            reason or "Message failed after max retries",
            message_id=envelope.message_id,
            attempts=envelope.attempt_count + 1,
            queue=context.queue,
        ) from exception


async def replay_dead_letters(
    transport: IMessageTransport,
    dead_letter_queue: str,
    target_queue: str,
    *,
    limit: int | None = None,
    timeout: float = 1.0,
) -> int:
    """Move messages from *dead_letter_queue* back to *target_queue*.

    Operator tool: each message is republished through the default exchange with
    ``attemptCount`` reset to 0, then acked on the DLQ. Stops after *limit*
    messages or once no message arrived for *timeout* seconds. Returns the
    number of replayed messages.
    """
    replayed = 0
    done = asyncio.Event()

    async def _move(envelope: MessageEnvelope, context: DeliveryContext) -> None:
        nonlocal replayed
        if limit is not None and replayed >= limit:
            await context.nack(requeue=True)
            done.set()
            return
        headers = {
            k: v
            for k, v in envelope.headers.items()
            if k not in ("x-death", LAST_ERROR_HEADER)
        }
        headers[ATTEMPT_COUNT_HEADER] = 0
        fresh = envelope.model_copy(update={"headers": headers, "expiration": None})
        await transport.publish("", target_queue, fresh)
        await context.ack()
        replayed += 1
        logger.info(
            "Replayed message %s from %s to %s",
            envelope.message_id,
            dead_letter_queue,
            target_queue,
        )
        if limit is not None and replayed >= limit:
            done.set()

    tag = await transport.consume(
        dead_letter_queue, _move, ConsumeOptions(prefetch_count=1)
    )
    try:
        while not done.is_set():
            before = replayed
            try:
                await asyncio.wait_for(done.wait(), timeout)
            except asyncio.TimeoutError:
                if replayed == before:
                    break
    finally:
        await transport.cancel(tag)
    return replayed

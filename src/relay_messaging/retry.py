"""Retry with exponential backoff through a broker-side delay queue."""

from __future__ import annotations

import functools
import logging
import random
from typing import TYPE_CHECKING, Any

from .dead_letter import DeadLetterHandler
from .envelope import (
    ATTEMPT_COUNT_HEADER,
    LAST_ERROR_HEADER,
    MAX_ATTEMPTS_HEADER,
    ORIGINAL_EXCHANGE_HEADER,
    ORIGINAL_ROUTING_KEY_HEADER,
    PublishOptions,
)
from .exceptions import (
    MessagingConnectionError,
    NonRetryableError,
    PublishRefusedError,
)
from .topology import DEFAULT_EXCHANGE, retry_queue_name

if TYPE_CHECKING:
    from .config import MessagingSettings
    from .context import DeliveryContext
    from .envelope import MessageEnvelope
    from .metrics import MessagingMetrics
    from .ports import IMessagePublisher, MessageHandler

logger = logging.getLogger("relay.retry")

_MAX_ERROR_HEADER_LENGTH = 512


class RetryPolicy:
    """Exponential backoff keyed on the 0-based ``attemptCount`` header."""

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float | None = None,
        jitter: bool = False,
    ) -> None:
        """Configure retry behavior.

        Args:
            max_retries: Redeliveries allowed after the first attempt.
            base_delay: Delay in seconds before the first retry.
            max_delay: Optional cap on delay in seconds.
            jitter: If True, multiply delays by a random factor in [0.5, 1.5].
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if base_delay < 0 or (max_delay is not None and max_delay < 0):
            raise ValueError("base_delay and max_delay must be >= 0")
        if max_delay is not None and base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def should_retry(self, attempt_count: int) -> bool:
        """Return True if a message with this attempt count may be retried."""
        return 0 <= attempt_count < self.max_retries

    def delay_for_attempt(self, attempt_count: int) -> float:
        """Return ``base_delay * 2**attempt_count`` seconds, capped and jittered."""
        if attempt_count < 0:
            return 0.0
        delay = self.base_delay * (2**attempt_count)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())  # noqa: S311
        return float(max(0.0, delay))

    @classmethod
    def from_settings(cls, settings: MessagingSettings) -> RetryPolicy:
        return cls(
            max_retries=settings.default_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )


class RetryHandler:
    """Wraps handlers so failures are redelivered later instead of blocking.

    A message may be retried while its ``attemptCount`` is below both the
    handler's ``max_retries`` and the message's own ``maxAttempts`` header.
    On handler failure within that bound the same payload is published to
    ``<queue><retry_suffix>.<attemptCount>`` with ``attemptCount + 1`` and an
    expiration equal to the backoff delay, and the original delivery is acked.
    The delay queue dead-letters the message back to the work queue when it
    expires. Otherwise the delivery is dead-lettered and
    :class:`RetryExhaustedError` is raised.

    ``NonRetryableError`` (and any type in *non_retryable*) skips straight to
    dead-letter, as does a retry the broker refuses to route.
    """

    def __init__(
        self,
        publisher: IMessagePublisher,
        *,
        policy: RetryPolicy | None = None,
        retry_suffix: str = ".retry",
        dead_letter: DeadLetterHandler | None = None,
        non_retryable: tuple[type[BaseException], ...] = (),
        metrics: MessagingMetrics | None = None,
    ) -> None:
        self._publisher = publisher
        self._policy = policy or RetryPolicy()
        self._retry_suffix = retry_suffix
        self._dead_letter = dead_letter or DeadLetterHandler(metrics=metrics)
        self._non_retryable = (NonRetryableError, *non_retryable)
        self._metrics = metrics

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def wrap(
        self,
        handler: MessageHandler,
        max_retries: int | None = None,
        base_delay: float | None = None,
    ) -> MessageHandler:
        """Return *handler* with retry/backoff applied.

        *max_retries* and *base_delay* override the policy for this handler.
        """
        policy = self._policy
        if max_retries is not None or base_delay is not None:
            policy = RetryPolicy(
                max_retries=policy.max_retries if max_retries is None else max_retries,
                base_delay=policy.base_delay if base_delay is None else base_delay,
                max_delay=policy.max_delay,
                jitter=policy.jitter,
            )

        @functools.wraps(handler)
        async def retrying(
            envelope: MessageEnvelope, context: DeliveryContext
        ) -> None:
            if not envelope.message_id and not envelope.correlation_id:
                logger.warning(
                    "Message of type %r on %s has no id or correlation id; "
                    "retrying without deduplication",
                    envelope.message_type,
                    context.queue,
                )
            try:
                await handler(envelope, context)
            except Exception as exc:
                await self._on_failure(policy, envelope, context, exc)

        return retrying

    @staticmethod
    def retry_limit(policy: RetryPolicy, envelope: MessageEnvelope) -> int:
        """Retries allowed for *envelope*: the policy's, capped by ``maxAttempts``."""
        if MAX_ATTEMPTS_HEADER in envelope.headers:
            return min(policy.max_retries, envelope.max_attempts)
        return policy.max_retries

    async def _on_failure(
        self,
        policy: RetryPolicy,
        envelope: MessageEnvelope,
        context: DeliveryContext,
        exc: Exception,
    ) -> None:
        if context.settled:
            # The handler already decided the delivery's fate.
            raise exc
        attempt = envelope.attempt_count
        if isinstance(exc, self._non_retryable):
            logger.error(
                "Non-retryable failure for message %s on %s: %s",
                envelope.message_id,
                context.queue,
                exc,
            )
            await self._dead_letter.route(
                envelope, context, f"non-retryable: {exc}", exc
            )
            return
        limit = self.retry_limit(policy, envelope)
        if not 0 <= attempt < limit:
            logger.error(
                "Message %s on %s failed attempt %d/%d; dead-lettering",
                envelope.message_id,
                context.queue,
                attempt + 1,
                limit + 1,
            )
            await self._dead_letter.route(
                envelope, context, f"retries exhausted: {exc}", exc
            )
            return

        delay = policy.delay_for_attempt(attempt)
        delay_ms = int(round(delay * 1000))
        retry = envelope.with_headers(
            **{
                ATTEMPT_COUNT_HEADER: attempt + 1,
                MAX_ATTEMPTS_HEADER: limit,
                LAST_ERROR_HEADER: str(exc)[:_MAX_ERROR_HEADER_LENGTH],
                ORIGINAL_EXCHANGE_HEADER: envelope.headers.get(
                    ORIGINAL_EXCHANGE_HEADER, context.exchange
                ),
                ORIGINAL_ROUTING_KEY_HEADER: envelope.headers.get(
                    ORIGINAL_ROUTING_KEY_HEADER, context.routing_key
                ),
            }
        )
        target = retry_queue_name(context.queue, attempt, self._retry_suffix)
        try:
            published = await self._publisher.publish(
                DEFAULT_EXCHANGE,
                target,
                retry,
                PublishOptions(
                    expiration=delay_ms, priority=envelope.priority, mandatory=True
                ),
            )
        except PublishRefusedError:
            published = False
        except MessagingConnectionError:
            logger.exception(
                "Could not schedule retry of message %s on %s; requeueing",
                envelope.message_id,
                context.queue,
            )
            await context.nack(requeue=True)
            raise
        if not published:
            logger.error(
                "Broker refused retry of message %s to %r (delay queue missing?)",
                envelope.message_id,
                target,
            )
            await self._dead_letter.route(
                envelope, context, f"retry refused by broker: {exc}", exc
            )
            return
        await context.ack_for_retry()
        if self._metrics is not None:
            self._metrics.record_retry(context.queue)
        logger.warning(
            "Message %s on %s failed (attempt %d): %s; retrying in %dms via %s",
            envelope.message_id,
            context.queue,
            attempt + 1,
            exc,
            delay_ms,
            target,
        )


def with_retry(
    handler: MessageHandler,
    publisher: IMessagePublisher,
    max_retries: int = 3,
    base_delay: float = 1.0,
    **kwargs: Any,
) -> MessageHandler:
    """Shorthand for ``RetryHandler(publisher, **kwargs).wrap(handler, ...)``."""
    return RetryHandler(publisher, **kwargs).wrap(
        handler, max_retries=max_retries, base_delay=base_delay
    )

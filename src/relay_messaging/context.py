"""DeliveryContext: acknowledgment contract exposed to message handlers."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from .envelope import ATTEMPT_COUNT_HEADER

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .envelope import MessageEnvelope

logger = logging.getLogger("relay.dispatch")


class DeliveryOutcome(str, Enum):
    """Terminal action taken for a delivery."""

    ACKED = "acked"
    REQUEUED = "requeued"
    REJECTED = "rejected"


class DeliveryContext:
    """Per-delivery handle given to handlers alongside the envelope.

    A delivery ends in exactly one terminal action: :meth:`ack`,
    :meth:`nack` (requeue) or :meth:`reject` (dead-letter). Later actions are
    ignored with a warning.
    """

    def __init__(
        self,
        envelope: MessageEnvelope,
        *,
        queue: str,
        exchange: str = "",
        routing_key: str = "",
        redelivered: bool = False,
        on_ack: Callable[[], Awaitable[Any]],
        on_nack: Callable[[bool], Awaitable[Any]],
    ) -> None:
        self.envelope = envelope
        self.queue = queue
        self.exchange = exchange
        self.routing_key = routing_key
        self.redelivered = redelivered
        self._on_ack = on_ack
        self._on_nack = on_nack
        self._outcome: DeliveryOutcome | None = None
        self._retry_scheduled = False

    @property
    def outcome(self) -> DeliveryOutcome | None:
        return self._outcome

    @property
    def settled(self) -> bool:
        """True once a terminal action was taken."""
        return self._outcome is not None

    @property
    def retry_scheduled(self) -> bool:
        """True when the ack only hands the message over to a delayed retry."""
        return self._retry_scheduled

    @property
    def headers(self) -> dict[str, Any]:
        return self.envelope.headers

    @property
    def correlation_id(self) -> str | None:
        return self.envelope.correlation_id

    @property
    def reply_to(self) -> str | None:
        return self.envelope.reply_to

    @property
    def attempt_count(self) -> int:
        return self.envelope.attempt_count

    @property
    def max_attempts(self) -> int:
        return self.envelope.max_attempts

    async def ack(self) -> None:
        """Acknowledge: remove the message from the queue."""
        if self._claim(DeliveryOutcome.ACKED):
            await self._on_ack()

    async def ack_for_retry(self) -> None:
        """Ack because a retry copy was published; the work itself failed."""
        if self._claim(DeliveryOutcome.ACKED):
            self._retry_scheduled = True
            await self._on_ack()

    async def nack(self, *, requeue: bool = True) -> None:
        """Negative-acknowledge; ``requeue=False`` dead-letters the message."""
        outcome = DeliveryOutcome.REQUEUED if requeue else DeliveryOutcome.REJECTED
        if self._claim(outcome):
            await self._on_nack(requeue)

    async def reject(self) -> None:
        """Negative-acknowledge without requeue (dead-letter or drop)."""
        await self.nack(requeue=False)

    def _claim(self, outcome: DeliveryOutcome) -> bool:
        if self._outcome is not None:
            logger.warning(
                "Ignoring %s for message %s on %s: already %s",
                outcome.value,
                self.envelope.message_id,
                self.queue,
                self._outcome.value,
            )
            return False
        self._outcome = outcome
        return True

    def __repr__(self) -> str:
        return (
            f"DeliveryContext(queue={self.queue!r}, "
            f"message_id={self.envelope.message_id!r}, "
            f"{ATTEMPT_COUNT_HEADER}={self.attempt_count}, outcome={self._outcome})"
        )

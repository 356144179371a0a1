"""IdempotencyFilter: suppress reprocessing of already-completed messages.

Keys are recorded only after the wrapped handler succeeds, so a failed
delivery is reprocessed on redelivery. Retention is always bounded: the
in-memory store evicts by TTL and size, Redis keys carry an expiry.
"""

from __future__ import annotations

import functools
import logging
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from .context import DeliveryOutcome

if TYPE_CHECKING:
    from collections.abc import Callable

    from redis.asyncio import Redis

    from .config import MessagingSettings
    from .context import DeliveryContext
    from .envelope import MessageEnvelope
    from .ports import MessageHandler

logger = logging.getLogger("relay.idempotency")


def default_key(envelope: MessageEnvelope) -> str | None:
    """Use the message id, falling back to the correlation id."""
    return envelope.message_id or envelope.correlation_id


@runtime_checkable
class IIdempotencyStore(Protocol):
    """Storage for processed business keys."""

    async def contains(self, key: str) -> bool: ...

    async def add(self, key: str) -> None: ...


class InMemoryIdempotencyStore:
    """Bounded in-process key set with TTL and LRU size eviction.

    Mutated only from the event loop thread; no operation awaits in the
    middle of a lookup or insert.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 86400.0,
        max_keys: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_keys < 1:
            raise ValueError("max_keys must be >= 1")
        self._ttl = ttl_seconds
        self._max_keys = max_keys
        self._clock = clock
        self._keys: OrderedDict[str, float] = OrderedDict()

    @classmethod
    def from_settings(cls, settings: MessagingSettings) -> InMemoryIdempotencyStore:
        return cls(
            ttl_seconds=settings.idempotency_ttl,
            max_keys=settings.idempotency_max_keys,
        )

    async def contains(self, key: str) -> bool:
        expires_at = self._keys.get(key)
        if expires_at is None:
            return False
        if expires_at <= self._clock():
            del self._keys[key]
            return False
        return True

    async def add(self, key: str) -> None:
        now = self._clock()
        self._keys[key] = now + self._ttl
        self._keys.move_to_end(key)
        self._evict(now)

    def _evict(self, now: float) -> None:
        # Insertion order equals expiry order (constant TTL).
        while self._keys:
            oldest_key, expires_at = next(iter(self._keys.items()))
            if expires_at > now and len(self._keys) <= self._max_keys:
                break
            del self._keys[oldest_key]

    def __len__(self) -> int:
        return len(self._keys)

    def clear(self) -> None:
        """Drop every recorded key (for testing)."""
        self._keys.clear()


class RedisIdempotencyStore:
    """Distributed key set on Redis; each key expires after ``ttl_seconds``."""

    def __init__(
        self,
        redis_client: Redis[bytes],
        *,
        key_prefix: str = "relay:idempotency:",
        ttl_seconds: int = 86400,
    ) -> None:
        """
        Initialize the store with an async Redis client.

        Args:
            redis_client: ``redis.asyncio.Redis`` instance.
            key_prefix: Prefix for Redis keys.
            ttl_seconds: Retention window for processed keys.
        """
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._ttl_seconds = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def contains(self, key: str) -> bool:
        return bool(await self._redis.exists(self._key(key)))

    async def add(self, key: str) -> None:
        await self._redis.set(self._key(key), "1", ex=self._ttl_seconds)


class IdempotencyFilter:
    """Wraps handlers so a business key is processed at most once per window.

    A duplicate is acked without invoking the handler. Messages without a key
    are processed anyway, with a warning. A delivery that was acked only to
    hand it to a delayed retry is not recorded.
    """

    def __init__(
        self,
        store: IIdempotencyStore | None = None,
        *,
        key_extractor: Callable[[MessageEnvelope], str | None] = default_key,
    ) -> None:
        self._store = store if store is not None else InMemoryIdempotencyStore()
        self._key_extractor = key_extractor

    @property
    def store(self) -> IIdempotencyStore:
        return self._store

    async def is_duplicate(self, key: str) -> bool:
        """Return True if *key* was already processed."""
        return await self._store.contains(key)

    async def mark_processed(self, key: str) -> None:
        await self._store.add(key)

    def wrap(
        self,
        handler: MessageHandler,
        key_extractor: Callable[[MessageEnvelope], str | None] | None = None,
    ) -> MessageHandler:
        """Return *handler* guarded by this filter."""
        extract = key_extractor or self._key_extractor

        @functools.wraps(handler)
        async def idempotent(
            envelope: MessageEnvelope, context: DeliveryContext
        ) -> None:
            key = extract(envelope)
            if not key:
                logger.warning(
                    "Message of type %r on %s has no idempotency key; processing "
                    "without deduplication",
                    envelope.message_type,
                    context.queue,
                )
                await handler(envelope, context)
                return
            if await self._store.contains(key):
                logger.info(
                    "Duplicate message %s (key=%s) on %s suppressed",
                    envelope.message_id,
                    key,
                    context.queue,
                )
                if not context.settled:
                    await context.ack()
                return
            await handler(envelope, context)
            if context.retry_scheduled:
                return
            if context.outcome in (None, DeliveryOutcome.ACKED):
                await self._store.add(key)

        return idempotent

"""Tests for IdempotencyFilter and its stores."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock

import pytest

from relay_messaging.context import DeliveryContext, DeliveryOutcome
from relay_messaging.envelope import MessageEnvelope
from relay_messaging.idempotency import (
    IdempotencyFilter,
    IIdempotencyStore,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
)
from relay_messaging.memory import InMemoryBroker
from relay_messaging.retry import RetryHandler


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _context(envelope: MessageEnvelope) -> DeliveryContext:
    return DeliveryContext(
        envelope, queue="orders", on_ack=AsyncMock(), on_nack=AsyncMock()
    )


@pytest.mark.asyncio
async def test_in_memory_store_ttl() -> None:
    clock = FakeClock()
    store = InMemoryIdempotencyStore(ttl_seconds=10, clock=clock)
    await store.add("k")
    assert await store.contains("k")
    clock.now = 10.0
    assert not await store.contains("k")
    assert len(store) == 0


@pytest.mark.asyncio
async def test_in_memory_store_is_bounded() -> None:
    store = InMemoryIdempotencyStore(max_keys=2)
    for key in ("a", "b", "c"):
        await store.add(key)
    assert len(store) == 2
    assert not await store.contains("a")
    assert await store.contains("c")


def test_store_validation() -> None:
    with pytest.raises(ValueError, match="ttl_seconds"):
        InMemoryIdempotencyStore(ttl_seconds=0)
    with pytest.raises(ValueError, match="max_keys"):
        InMemoryIdempotencyStore(max_keys=0)


def test_stores_satisfy_protocol() -> None:
    assert isinstance(InMemoryIdempotencyStore(), IIdempotencyStore)
    assert isinstance(RedisIdempotencyStore(AsyncMock()), IIdempotencyStore)


@pytest.mark.asyncio
async def test_redis_store_uses_prefixed_keys_with_expiry() -> None:
    redis = AsyncMock()
    redis.exists = AsyncMock(return_value=1)
    store = RedisIdempotencyStore(redis, ttl_seconds=60)
    await store.add("m-1")
    redis.set.assert_awaited_once_with("relay:idempotency:m-1", "1", ex=60)
    assert await store.contains("m-1") is True
    redis.exists.assert_awaited_once_with("relay:idempotency:m-1")


@pytest.mark.asyncio
async def test_duplicate_is_acked_without_processing(envelope: MessageEnvelope) -> None:
    handler = AsyncMock()
    guarded = IdempotencyFilter().wrap(handler)

    first = _context(envelope)
    await guarded(envelope, first)
    await first.ack()

    second = _context(envelope)
    await guarded(envelope, second)
    handler.assert_awaited_once()
    assert second.outcome is DeliveryOutcome.ACKED


@pytest.mark.asyncio
async def test_failure_does_not_record_key(envelope: MessageEnvelope) -> None:
    filter_ = IdempotencyFilter()
    handler = AsyncMock(side_effect=[RuntimeError("first try"), None])
    guarded = filter_.wrap(handler)

    with pytest.raises(RuntimeError):
        await guarded(envelope, _context(envelope))
    assert not await filter_.is_duplicate("msg-1")

    await guarded(envelope, _context(envelope))
    assert handler.await_count == 2
    assert await filter_.is_duplicate("msg-1")


@pytest.mark.asyncio
async def test_requeued_delivery_does_not_record_key(envelope: MessageEnvelope) -> None:
    filter_ = IdempotencyFilter()

    async def handler(env: MessageEnvelope, ctx: DeliveryContext) -> None:
        await ctx.nack(requeue=True)

    await filter_.wrap(handler)(envelope, _context(envelope))
    assert not await filter_.is_duplicate("msg-1")


@pytest.mark.asyncio
async def test_missing_key_processes_with_warning(
    caplog: pytest.LogCaptureFixture,
) -> None:
    env = MessageEnvelope(message_id=None, message_type="order.created")
    handler = AsyncMock()
    guarded = IdempotencyFilter().wrap(handler)
    with caplog.at_level(logging.WARNING, logger="relay.idempotency"):
        await guarded(env, _context(env))
        await guarded(env, _context(env))
    assert handler.await_count == 2
    assert "no idempotency key" in caplog.text


@pytest.mark.asyncio
async def test_custom_business_key(envelope: MessageEnvelope) -> None:
    handler = AsyncMock()
    guarded = IdempotencyFilter().wrap(handler, key_extractor=lambda e: "order-o-1")
    await guarded(envelope, _context(envelope))
    other = MessageEnvelope(message_type="order.created")
    await guarded(other, _context(other))
    handler.assert_awaited_once()


@pytest.mark.asyncio
async def test_redelivered_duplicate_through_broker(broker: InMemoryBroker) -> None:
    handled: list[str | None] = []

    async def handler(env: MessageEnvelope, ctx: DeliveryContext) -> None:
        handled.append(env.message_id)

    await broker.consume("orders", IdempotencyFilter().wrap(handler))
    env = MessageEnvelope(message_id="dup", message_type="order.created")
    await broker.publish("", "orders", env)
    await broker.wait_idle()
    await broker.publish("", "orders", env)
    await broker.wait_idle()
    assert handled == ["dup"]
    assert broker.messages("orders") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("idempotency_outside", [True, False])
async def test_scheduled_retry_is_not_recorded_as_processed(
    broker: InMemoryBroker, idempotency_outside: bool
) -> None:
    attempts: list[int] = []

    async def handler(env: MessageEnvelope, ctx: DeliveryContext) -> None:
        attempts.append(env.attempt_count)
        if env.attempt_count == 0:
            raise RuntimeError("transient")

    idempotency = IdempotencyFilter()
    retry = RetryHandler(broker)
    if idempotency_outside:
        guarded = idempotency.wrap(retry.wrap(handler, 3, 0.01))
    else:
        guarded = retry.wrap(idempotency.wrap(handler), 3, 0.01)
    await broker.consume("orders", guarded)

    env = MessageEnvelope(message_id="m-1", message_type="order.created")
    await broker.publish("", "orders", env)
    await broker.wait_idle()
    assert attempts == [0, 1]
    assert broker.messages("orders.dlq") == []

    await broker.publish("", "orders", env)
    await broker.wait_idle()
    assert attempts == [0, 1]


@pytest.mark.asyncio
async def test_retry_acked_delivery_leaves_store_empty(
    envelope: MessageEnvelope,
) -> None:
    store = InMemoryIdempotencyStore()

    async def hands_to_retry(env: MessageEnvelope, ctx: DeliveryContext) -> None:
        await ctx.ack_for_retry()

    ctx = _context(envelope)
    await IdempotencyFilter(store).wrap(hands_to_retry)(envelope, ctx)
    assert ctx.outcome is DeliveryOutcome.ACKED
    assert not await store.contains("msg-1")

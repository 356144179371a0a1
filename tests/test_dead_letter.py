"""Tests for DeadLetterHandler and replay_dead_letters."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from relay_messaging.context import DeliveryContext, DeliveryOutcome
from relay_messaging.dead_letter import DeadLetterHandler, replay_dead_letters
from relay_messaging.envelope import MessageEnvelope
from relay_messaging.exceptions import RetryExhaustedError
from relay_messaging.memory import InMemoryBroker


def _context(envelope: MessageEnvelope) -> DeliveryContext:
    return DeliveryContext(
        envelope, queue="orders", on_ack=AsyncMock(), on_nack=AsyncMock()
    )


@pytest.mark.asyncio
async def test_route_rejects_and_raises(envelope: MessageEnvelope) -> None:
    callback = AsyncMock()
    handler = DeadLetterHandler(on_dead_letter=callback)
    ctx = _context(envelope)
    cause = RuntimeError("broken")
    with pytest.raises(RetryExhaustedError, match="gave up") as exc_info:
        await handler.route(envelope, ctx, "gave up", cause)
    callback.assert_awaited_once_with(envelope, "gave up", cause)
    assert ctx.outcome is DeliveryOutcome.REJECTED
    assert exc_info.value.message_id == "msg-1"
    assert exc_info.value.__cause__ is cause


@pytest.mark.asyncio
async def test_callback_failure_does_not_block_dead_letter(
    envelope: MessageEnvelope,
) -> None:
    handler = DeadLetterHandler(on_dead_letter=AsyncMock(side_effect=ValueError("x")))
    ctx = _context(envelope)
    with pytest.raises(RetryExhaustedError):
        await handler.route(envelope, ctx, "")
    assert ctx.outcome is DeliveryOutcome.REJECTED


@pytest.mark.asyncio
async def test_replay_moves_messages_back(broker: InMemoryBroker) -> None:
    for i in range(3):
        await broker.publish(
            "",
            "orders.dlq",
            MessageEnvelope(
                message_id=f"m-{i}",
                message_type="order.created",
                headers={"attemptCount": 3, "lastError": "boom"},
            ),
        )

    moved = await replay_dead_letters(
        broker, "orders.dlq", "orders", limit=2, timeout=0.05
    )
    await broker.wait_idle()

    assert moved == 2
    replayed = broker.messages("orders")
    assert [e.message_id for e in replayed] == ["m-0", "m-1"]
    assert all(e.attempt_count == 0 for e in replayed)
    assert all("lastError" not in e.headers for e in replayed)
    assert [e.message_id for e in broker.messages("orders.dlq")] == ["m-2"]


@pytest.mark.asyncio
async def test_replay_empty_queue_returns_zero(broker: InMemoryBroker) -> None:
    assert await replay_dead_letters(broker, "orders.dlq", "orders", timeout=0.01) == 0

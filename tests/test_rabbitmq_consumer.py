"""Unit tests for RabbitMQConsumer with mocked incoming messages."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import aio_pika.exceptions
import pytest

from relay_messaging.context import DeliveryContext
from relay_messaging.envelope import MessageEnvelope
from relay_messaging.rabbitmq.consumer import RabbitMQConsumer
from relay_messaging.serialization import EnvelopeSerializer


def _incoming(**overrides: Any) -> MagicMock:
    message = MagicMock()
    message.message_id = "m-1"
    message.type = "order.created"
    message.routing_key = "order.create"
    message.exchange = "commands"
    message.body = b'{"orderId":"o-1"}'
    message.headers = {"attemptCount": 1, "traceId": b"t-1"}
    message.priority = 3
    message.correlation_id = "c-1"
    message.reply_to = None
    message.redelivered = False
    message.timestamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
    message.ack = AsyncMock()
    message.nack = AsyncMock()
    message.reject = AsyncMock()
    for key, value in overrides.items():
        setattr(message, key, value)
    return message


@pytest.mark.asyncio
async def test_delivers_decoded_envelope_and_acks() -> None:
    seen: list[tuple[MessageEnvelope, DeliveryContext]] = []

    async def handler(envelope: MessageEnvelope, context: DeliveryContext) -> None:
        seen.append((envelope, context))

    message = _incoming()
    await RabbitMQConsumer("orders", handler, EnvelopeSerializer())(message)

    [(envelope, context)] = seen
    assert envelope.message_type == "order.created"
    assert envelope.attempt_count == 1
    assert envelope.headers["traceId"] == "t-1"
    assert (context.queue, context.exchange, context.routing_key) == (
        "orders",
        "commands",
        "order.create",
    )
    message.ack.assert_awaited_once()


@pytest.mark.asyncio
async def test_handler_error_rejects_without_requeue() -> None:
    async def handler(envelope: MessageEnvelope, context: DeliveryContext) -> None:
        raise RuntimeError("boom")

    message = _incoming()
    await RabbitMQConsumer("orders", handler, EnvelopeSerializer())(message)
    message.nack.assert_awaited_once_with(requeue=False)
    message.ack.assert_not_awaited()


@pytest.mark.asyncio
async def test_undecodable_message_is_rejected() -> None:
    handler = AsyncMock()
    message = _incoming(priority="not-a-number")
    await RabbitMQConsumer("orders", handler, EnvelopeSerializer())(message)
    message.reject.assert_awaited_once_with(requeue=False)
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_settle_failure_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    async def handler(envelope: MessageEnvelope, context: DeliveryContext) -> None:
        return None

    message = _incoming()
    message.ack = AsyncMock(
        side_effect=aio_pika.exceptions.ChannelInvalidStateError("closed")
    )
    with caplog.at_level(logging.WARNING, logger="relay.dispatch"):
        await RabbitMQConsumer("orders", handler, EnvelopeSerializer())(message)
    assert "Could not settle message m-1" in caplog.text

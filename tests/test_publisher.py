"""Tests for MessagePublisher and payload encoding."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from relay_messaging.envelope import MessageEnvelope, PublishOptions
from relay_messaging.exceptions import PublishRefusedError
from relay_messaging.memory import InMemoryBroker
from relay_messaging.publisher import MessagePublisher, encode_payload
from relay_messaging.tracing import reset_trace_id, set_trace_id


def test_encode_payload() -> None:
    assert encode_payload(b"raw") == b"raw"
    assert encode_payload("text") == b"text"
    assert encode_payload({"a": 1}) == b'{"a":1}'


@pytest.mark.asyncio
async def test_publish_returns_sent_envelope(
    publisher: MessagePublisher, broker: InMemoryBroker
) -> None:
    sent = await publisher.publish(
        "commands",
        "order.create",
        "order.created",
        {"orderId": "o-1"},
        PublishOptions(priority=5, correlation_id="c-9"),
    )
    assert sent.priority == 5
    assert sent.correlation_id == "c-9"
    [published] = broker.get_published(message_type="order.created")
    assert published.envelope.message_id == sent.message_id
    assert published.envelope.payload == b'{"orderId":"o-1"}'
    assert len(broker.messages("orders")) == 1


@pytest.mark.asyncio
async def test_publish_stamps_trace_id(
    publisher: MessagePublisher, broker: InMemoryBroker
) -> None:
    token = set_trace_id("trace-1")
    try:
        await publisher.publish("", "orders", "order.created")
        await publisher.publish_envelope(
            "", "orders", MessageEnvelope(message_type="order.updated")
        )
    finally:
        reset_trace_id(token)
    assert [p.envelope.headers["traceId"] for p in broker.get_published()] == [
        "trace-1",
        "trace-1",
    ]


@pytest.mark.asyncio
async def test_refused_publish_raises() -> None:
    transport = AsyncMock()
    transport.publish = AsyncMock(return_value=False)
    with pytest.raises(PublishRefusedError, match="refused"):
        await MessagePublisher(transport).publish("x", "y", "order.created")


def test_build_keeps_explicit_ids(publisher: MessagePublisher) -> None:
    env = publisher.build("t", message_id="fixed", correlation_id="c")
    assert (env.message_id, env.correlation_id) == ("fixed", "c")

"""Tests for RequestReplyCorrelator, send_reply and responder."""

from __future__ import annotations

import asyncio
import logging

import pytest
import pytest_asyncio

from relay_messaging.envelope import MessageEnvelope
from relay_messaging.exceptions import (
    DuplicateCorrelationError,
    MessagingConnectionError,
    MessagingTimeoutError,
    RemoteHandlerError,
)
from relay_messaging.memory import InMemoryBroker
from relay_messaging.metrics import MessagingMetrics
from relay_messaging.rpc import RequestReplyCorrelator, responder, send_reply
from relay_messaging.serialization import decode_json
from relay_messaging.topology import QueueSpec, Topology


async def quote(request: MessageEnvelope) -> dict[str, object]:
    body = decode_json(request.payload)
    if body["sku"] == "missing":
        raise ValueError("unknown sku")
    return {"sku": body["sku"], "price": 42}


@pytest_asyncio.fixture
async def pricing(broker: InMemoryBroker) -> InMemoryBroker:
    await broker.declare(
        Topology(queues=(QueueSpec(name="pricing"), QueueSpec(name="slow")))
    )
    await broker.consume("pricing", responder(broker, quote))
    return broker


def _request(sku: str, **kwargs: object) -> MessageEnvelope:
    return MessageEnvelope(
        message_type="price.quote",
        payload=f'{{"sku":"{sku}"}}'.encode(),
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.mark.asyncio
async def test_call_returns_matching_reply(
    pricing: InMemoryBroker, metrics: MessagingMetrics
) -> None:
    correlator = RequestReplyCorrelator(pricing, metrics=metrics)
    reply = await correlator.call("", "pricing", _request("A-1"), timeout=1.0)
    assert decode_json(reply.payload) == {"sku": "A-1", "price": 42}
    assert reply.message_type == "price.quote.reply"
    assert correlator.pending_count == 0
    assert metrics.registry.get_sample_value(
        "relay_rpc_requests_total", {"outcome": "success"}
    ) == 1.0


@pytest.mark.asyncio
async def test_concurrent_calls_are_correlated(pricing: InMemoryBroker) -> None:
    correlator = RequestReplyCorrelator(pricing)
    replies = await asyncio.gather(
        *(correlator.call("", "pricing", _request(f"S-{i}"), 1.0) for i in range(5))
    )
    assert [decode_json(r.payload)["sku"] for r in replies] == [
        f"S-{i}" for i in range(5)
    ]


@pytest.mark.asyncio
async def test_remote_error_is_raised(pricing: InMemoryBroker) -> None:
    correlator = RequestReplyCorrelator(pricing)
    with pytest.raises(RemoteHandlerError, match="unknown sku") as exc_info:
        await correlator.call("", "pricing", _request("missing"), timeout=1.0)
    assert exc_info.value.error_type == "ValueError"


@pytest.mark.asyncio
async def test_timeout_removes_entry_and_late_reply_is_discarded(
    pricing: InMemoryBroker, caplog: pytest.LogCaptureFixture
) -> None:
    correlator = RequestReplyCorrelator(pricing)
    request = _request("A-1", correlation_id="late-1")
    with pytest.raises(MessagingTimeoutError) as exc_info:
        await correlator.call("", "slow", request, timeout=0.05)
    assert exc_info.value.timeout == 0.05
    assert correlator.pending_count == 0

    stuck = pricing.messages("slow")[0]
    assert stuck.correlation_id == "late-1"
    assert stuck.reply_to == correlator.reply_queue
    with caplog.at_level(logging.INFO, logger="relay.rpc"):
        assert await send_reply(pricing, stuck, {"price": 1})
        await pricing.wait_idle()
    assert "Discarding reply" in caplog.text
    assert pricing.messages(correlator.reply_queue) == []


@pytest.mark.asyncio
async def test_duplicate_correlation_id_is_rejected(pricing: InMemoryBroker) -> None:
    correlator = RequestReplyCorrelator(pricing)
    await correlator.start()
    first = asyncio.create_task(
        correlator.call("", "slow", _request("A", correlation_id="c-1"), 5.0)
    )
    await asyncio.sleep(0)
    with pytest.raises(DuplicateCorrelationError):
        await correlator.call("", "slow", _request("B", correlation_id="c-1"), 5.0)

    await correlator.stop()
    with pytest.raises(MessagingConnectionError, match="stopped"):
        await first


@pytest.mark.asyncio
async def test_refused_publish_removes_entry(broker: InMemoryBroker) -> None:
    correlator = RequestReplyCorrelator(broker)
    await broker.disconnect()
    with pytest.raises(MessagingConnectionError):
        await correlator.call("", "pricing", _request("A"), timeout=1.0)
    assert correlator.pending_count == 0


@pytest.mark.asyncio
async def test_send_reply_without_reply_to(broker: InMemoryBroker) -> None:
    assert await send_reply(broker, _request("A"), b"x") is False
    assert broker.get_published() == []

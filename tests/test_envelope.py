"""Tests for MessageEnvelope and PublishOptions."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from relay_messaging.envelope import (
    ATTEMPT_COUNT_HEADER,
    DEFAULT_MAX_ATTEMPTS,
    MAX_ATTEMPTS_HEADER,
    MessageEnvelope,
    PublishOptions,
)


def test_defaults() -> None:
    env = MessageEnvelope(message_type="order.created")
    assert env.message_id
    assert env.payload == b""
    assert env.headers == {}
    assert env.attempt_count == 0
    assert env.max_attempts == DEFAULT_MAX_ATTEMPTS
    assert env.timestamp.tzinfo is not None


def test_message_ids_are_unique() -> None:
    a = MessageEnvelope(message_type="x")
    b = MessageEnvelope(message_type="x")
    assert a.message_id != b.message_id


def test_frozen() -> None:
    env = MessageEnvelope(message_type="x")
    with pytest.raises(ValidationError):
        env.message_type = "y"  # type: ignore[misc]


def test_attempt_count_reads_header() -> None:
    env = MessageEnvelope(
        message_type="x", headers={ATTEMPT_COUNT_HEADER: "2", MAX_ATTEMPTS_HEADER: 5}
    )
    assert env.attempt_count == 2
    assert env.max_attempts == 5


def test_malformed_attempt_header_falls_back_to_zero() -> None:
    env = MessageEnvelope(message_type="x", headers={ATTEMPT_COUNT_HEADER: "soon"})
    assert env.attempt_count == 0


def test_with_headers_merges_and_copies() -> None:
    env = MessageEnvelope(message_type="x", headers={"a": 1})
    updated = env.with_headers(b=2, a=3)
    assert updated.headers == {"a": 3, "b": 2}
    assert env.headers == {"a": 1}
    assert updated.message_id == env.message_id


def test_with_options_applies_overrides() -> None:
    env = MessageEnvelope(message_type="x", headers={"keep": True})
    options = PublishOptions(
        priority=7,
        expiration=1500,
        correlation_id="c-1",
        reply_to="replies",
        headers={"extra": "1"},
        max_attempts=4,
    )
    applied = env.with_options(options)
    assert applied.priority == 7
    assert applied.expiration == 1500
    assert applied.correlation_id == "c-1"
    assert applied.reply_to == "replies"
    assert applied.headers == {"keep": True, "extra": "1", MAX_ATTEMPTS_HEADER: 4}


def test_with_options_none_is_identity() -> None:
    env = MessageEnvelope(message_type="x")
    assert env.with_options(None) is env


def test_priority_bounds() -> None:
    with pytest.raises(ValidationError):
        MessageEnvelope(message_type="x", priority=256)
    with pytest.raises(ValidationError):
        PublishOptions(expiration=-1)

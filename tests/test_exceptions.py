"""Tests for the exception hierarchy."""

from __future__ import annotations

from relay_messaging.exceptions import (
    BrokerUnavailableError,
    CircuitOpenError,
    DuplicateCorrelationError,
    MessagingConnectionError,
    MessagingError,
    MessagingTimeoutError,
    NonRetryableError,
    ProcessingError,
    PublishRefusedError,
    RelayError,
    RetryExhaustedError,
    SagaCompensatedError,
    SagaError,
)


def test_hierarchy() -> None:
    assert issubclass(MessagingError, RelayError)
    assert issubclass(SagaError, RelayError)
    assert issubclass(PublishRefusedError, MessagingConnectionError)
    assert issubclass(BrokerUnavailableError, MessagingConnectionError)
    assert issubclass(NonRetryableError, ProcessingError)
    assert not issubclass(SagaError, MessagingError)


def test_broker_unavailable_carries_last_error() -> None:
    cause = ConnectionError("refused")
    err = BrokerUnavailableError(10, cause)
    assert err.attempts == 10
    assert err.last_error is cause
    assert "after 10 attempt(s): refused" in str(err)


def test_typed_terminal_errors() -> None:
    timeout = MessagingTimeoutError("rpc:pricing", 2.5)
    assert timeout.operation == "rpc:pricing"
    assert "2.5s" in str(timeout)

    open_ = CircuitOpenError("payments", retry_after=12.0)
    assert open_.retry_after == 12.0
    assert "payments" in str(open_)

    exhausted = RetryExhaustedError("gave up", message_id="m", attempts=4, queue="q")
    assert (exhausted.message_id, exhausted.attempts, exhausted.queue) == ("m", 4, "q")

    duplicate = DuplicateCorrelationError("c-1")
    assert duplicate.correlation_id == "c-1"

    compensated = SagaCompensatedError("s1", "pay", "declined")
    assert "'s1'" in str(compensated)
    assert compensated.failed_step == "pay"

"""Exceptions for relay-messaging.

Only terminal outcomes (``RetryExhaustedError``, ``SagaCompensatedError``,
``CircuitOpenError``, ``MessagingTimeoutError``) are meant to reach business
code. Transport and processing errors are logged where they happen and
recovered locally.
"""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Root exception for the entire relay-messaging toolkit."""


class MessagingError(RelayError):
    """Base class for all messaging-related infrastructure errors."""


class MessagingConnectionError(MessagingError):
    """Raised when connectivity to the message broker fails."""


class PublishRefusedError(MessagingConnectionError):
    """Raised when the broker nacks or returns a published message."""


class BrokerUnavailableError(MessagingConnectionError):
    """Raised once reconnection attempts are exhausted."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Broker unavailable after {attempts} attempt(s){detail}")


class MessagingSerializationError(MessagingError):
    """Raised when message serialization or deserialization fails."""


class ProcessingError(MessagingError):
    """Raised by handlers to signal a (retryable) processing failure."""


class NonRetryableError(ProcessingError):
    """Processing failure that goes straight to dead-letter, skipping retries."""


class MessagingTimeoutError(MessagingError):
    """Raised when an operation exceeds its time budget."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Operation {operation!r} timed out after {timeout:g}s")


class CircuitOpenError(MessagingError):
    """Raised when a call is rejected because its circuit breaker is open."""

    def __init__(self, name: str, retry_after: float | None = None) -> None:
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker {name!r} is open")


class RetryExhaustedError(MessagingError):
    """Raised when a message is dead-lettered after its retries ran out."""

    def __init__(
        self,
        message: str,
        *,
        message_id: str | None = None,
        attempts: int = 0,
        queue: str | None = None,
    ) -> None:
        self.message_id = message_id
        self.attempts = attempts
        self.queue = queue
        super().__init__(message)


class DuplicateCorrelationError(MessagingError):
    """Raised when a request reuses a correlation id that is still pending."""

    def __init__(self, correlation_id: str) -> None:
        self.correlation_id = correlation_id
        super().__init__(f"Correlation id {correlation_id!r} already has a waiter")


class RemoteHandlerError(MessagingError):
    """Business error forwarded by a request/reply responder."""

    def __init__(self, message: str, error_type: str | None = None) -> None:
        self.error_type = error_type
        super().__init__(message)


class SagaError(RelayError):
    """Base class for saga orchestration errors."""


class SagaConfigurationError(SagaError):
    """Raised when a saga is started with an invalid definition."""


class SagaStateError(SagaError):
    """Raised when a saga operation conflicts with the saga's current state."""


class SagaCompensatedError(SagaError):
    """Terminal business failure: prior steps were compensated."""

    def __init__(self, saga_id: str, failed_step: str, error: Any = None) -> None:
        self.saga_id = saga_id
        self.failed_step = failed_step
        self.error = error
        super().__init__(
            f"Saga {saga_id!r} failed at step {failed_step!r} and was compensated"
        )

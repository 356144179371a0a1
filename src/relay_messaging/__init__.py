"""Reliable asynchronous messaging on RabbitMQ: retry, circuit breaking,
idempotency, request/reply and saga orchestration."""

from __future__ import annotations

from .batch import BatchProcessor
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitBreakerStats,
    CircuitState,
)
from .config import MessagingSettings
from .context import DeliveryContext, DeliveryOutcome
from .dead_letter import DeadLetterHandler, replay_dead_letters
from .dispatch import MessageRouter, dispatch
from .envelope import MessageEnvelope, PublishOptions
from .exceptions import (
    BrokerUnavailableError,
    CircuitOpenError,
    DuplicateCorrelationError,
    MessagingConnectionError,
    MessagingError,
    MessagingSerializationError,
    MessagingTimeoutError,
    NonRetryableError,
    ProcessingError,
    PublishRefusedError,
    RelayError,
    RemoteHandlerError,
    RetryExhaustedError,
    SagaCompensatedError,
    SagaConfigurationError,
    SagaError,
    SagaStateError,
)
from .health import HealthReport, HealthStatus, MessagingHealthCheck
from .idempotency import (
    IdempotencyFilter,
    IIdempotencyStore,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
)
from .memory import InMemoryBroker
from .metrics import MessagingMetrics
from .ports import (
    IMessageConsumer,
    IMessagePublisher,
    IMessageTransport,
    MessageHandler,
)
from .publisher import MessagePublisher
from .rabbitmq import ConnectionEvent, RabbitMQConnection
from .retry import RetryHandler, RetryPolicy, with_retry
from .rpc import RequestReplyCorrelator, responder, send_reply
from .sagas import SagaInstance, SagaOrchestrator, SagaStatus
from .serialization import EnvelopeSerializer
from .topology import (
    BindingSpec,
    ConsumeOptions,
    ExchangeKind,
    ExchangeSpec,
    QueueSpec,
    Topology,
    saga_topology,
    work_queue_topology,
)
from .tracing import TraceIdLogFilter, get_trace_id, set_trace_id

__all__ = [
    "BatchProcessor",
    "BindingSpec",
    "BrokerUnavailableError",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitBreakerStats",
    "CircuitOpenError",
    "CircuitState",
    "ConnectionEvent",
    "ConsumeOptions",
    "DeadLetterHandler",
    "DeliveryContext",
    "DeliveryOutcome",
    "DuplicateCorrelationError",
    "EnvelopeSerializer",
    "ExchangeKind",
    "ExchangeSpec",
    "HealthReport",
    "HealthStatus",
    "IIdempotencyStore",
    "IMessageConsumer",
    "IMessagePublisher",
    "IMessageTransport",
    "IdempotencyFilter",
    "InMemoryBroker",
    "InMemoryIdempotencyStore",
    "MessageEnvelope",
    "MessageHandler",
    "MessagePublisher",
    "MessageRouter",
    "MessagingConnectionError",
    "MessagingError",
    "MessagingHealthCheck",
    "MessagingMetrics",
    "MessagingSerializationError",
    "MessagingSettings",
    "MessagingTimeoutError",
    "NonRetryableError",
    "ProcessingError",
    "PublishOptions",
    "PublishRefusedError",
    "QueueSpec",
    "RabbitMQConnection",
    "RedisIdempotencyStore",
    "RelayError",
    "RemoteHandlerError",
    "RequestReplyCorrelator",
    "RetryExhaustedError",
    "RetryHandler",
    "RetryPolicy",
    "SagaCompensatedError",
    "SagaConfigurationError",
    "SagaError",
    "SagaInstance",
    "SagaOrchestrator",
    "SagaStateError",
    "SagaStatus",
    "TraceIdLogFilter",
    "Topology",
    "dispatch",
    "get_trace_id",
    "replay_dead_letters",
    "responder",
    "saga_topology",
    "send_reply",
    "set_trace_id",
    "with_retry",
    "work_queue_topology",
]

"""Saga orchestration: ordered steps, reverse-order compensation."""

from .events import (
    SAGA_COMPENSATE,
    SAGA_COMPLETED,
    SAGA_CONTINUE,
    SAGA_FAILED,
    SAGA_START,
    SagaCompletedEvent,
    SagaEvent,
    SagaFailedEvent,
    SagaStepCommand,
    SagaStepCompensation,
    SagaStepOutcome,
)
from .orchestrator import SagaOrchestrator
from .state import SagaInstance, SagaStatus
from .store import InMemorySagaStore, ISagaStore

__all__ = [
    "SAGA_COMPENSATE",
    "SAGA_COMPLETED",
    "SAGA_CONTINUE",
    "SAGA_FAILED",
    "SAGA_START",
    "ISagaStore",
    "InMemorySagaStore",
    "SagaCompletedEvent",
    "SagaEvent",
    "SagaFailedEvent",
    "SagaInstance",
    "SagaOrchestrator",
    "SagaStatus",
    "SagaStepCommand",
    "SagaStepCompensation",
    "SagaStepOutcome",
]

"""Saga event payloads carried on the saga exchange.

Field names go over the wire in camelCase (``sagaId``, ``remainingSteps``)
and are accepted in either form on the way in.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..exceptions import SagaCompensatedError

SAGA_START = "saga.start"
SAGA_CONTINUE = "saga.continue"
SAGA_COMPENSATE = "saga.compensate"
SAGA_COMPLETED = "saga.completed"
SAGA_FAILED = "saga.failed"


class SagaEvent(BaseModel):
    """Base payload: every saga event names its saga."""

    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    saga_id: str

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class SagaStepCommand(SagaEvent):
    """Asks the owning service to run *step* (``saga.start`` / ``saga.continue``)."""

    step: str
    data: Any = None
    remaining_steps: list[str] = Field(default_factory=list)


class SagaStepCompensation(SagaEvent):
    """Asks the owning service to undo *step* (``saga.compensate``)."""

    step: str
    error: Any = None


class SagaCompletedEvent(SagaEvent):
    result: Any = None


class SagaFailedEvent(SagaEvent):
    failed_step: str
    error: Any = None

    def to_error(self) -> SagaCompensatedError:
        """Build the error an initiating caller raises for this outcome."""
        return SagaCompensatedError(self.saga_id, self.failed_step, self.error)


class SagaStepOutcome(SagaEvent):
    """Reported by a participant once it has run a step."""

    step: str
    success: bool = True
    result: Any = None
    error: Any = None

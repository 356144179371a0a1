"""Saga instance state tracked by the orchestrator."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SagaStatus(str, Enum):
    """Lifecycle states for a saga instance."""

    ACTIVE = "active"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    FAILED = "failed"


class SagaInstance(BaseModel):
    """
    One business transaction coordinated across services.

    ``steps`` keeps the order given at start; ``remaining_steps`` shrinks from
    the head as steps complete, so ``current_step`` is always its first item.
    """

    saga_id: str
    steps: list[str]
    remaining_steps: list[str]
    completed_steps: list[str] = Field(default_factory=list)
    data: Any = None
    status: SagaStatus = SagaStatus.ACTIVE

    # ── Failure ─────────────────────────────────────────────────────
    failed_step: str | None = None
    error: Any = None

    # ── Audit ───────────────────────────────────────────────────────
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def current_step(self) -> str | None:
        return self.remaining_steps[0] if self.remaining_steps else None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SagaStatus.COMPLETED, SagaStatus.FAILED)

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def steps_before(self, step: str) -> list[str]:
        """Steps strictly before *step* in start order."""
        return self.steps[: self.steps.index(step)]

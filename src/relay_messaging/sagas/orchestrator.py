"""SagaOrchestrator: ordered multi-service transactions with compensation.

State machine per saga id::

    active ──(last step done)──────────────────────────► completed
      │
      └──(step failed)──► compensating ──(undo sent)──► failed

Completion and failure notices for unknown sagas or for steps that are not
the current head are logged and ignored, so duplicate and late saga events
are harmless. Calls for the same saga id run one at a time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from ..exceptions import (
    NonRetryableError,
    PublishRefusedError,
    SagaConfigurationError,
    SagaStateError,
)
from ..topology import saga_topology
from .events import (
    SAGA_COMPENSATE,
    SAGA_COMPLETED,
    SAGA_CONTINUE,
    SAGA_FAILED,
    SAGA_START,
    SagaCompletedEvent,
    SagaFailedEvent,
    SagaStepCommand,
    SagaStepCompensation,
    SagaStepOutcome,
)
from .state import SagaInstance, SagaStatus
from .store import InMemorySagaStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from ..config import MessagingSettings
    from ..context import DeliveryContext
    from ..envelope import MessageEnvelope
    from ..publisher import MessagePublisher
    from ..topology import Topology
    from .events import SagaEvent
    from .store import ISagaStore

logger = logging.getLogger("relay.sagas")


class SagaOrchestrator:
    """
    Tracks each saga's ordered step list and publishes the next saga event.

    Events go to ``exchange`` with routing keys ``saga.start``,
    ``saga.continue``, ``saga.compensate``, ``saga.completed`` and
    ``saga.failed``; the saga id travels as the correlation id.
    """

    def __init__(
        self,
        publisher: MessagePublisher,
        *,
        exchange: str = "saga",
        store: ISagaStore | None = None,
    ) -> None:
        self._publisher = publisher
        self._exchange = exchange
        self._store: ISagaStore = store if store is not None else InMemorySagaStore()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @classmethod
    def from_settings(
        cls, publisher: MessagePublisher, settings: MessagingSettings, **kwargs: Any
    ) -> SagaOrchestrator:
        return cls(publisher, exchange=settings.saga_exchange, **kwargs)

    @property
    def exchange(self) -> str:
        return self._exchange

    @property
    def store(self) -> ISagaStore:
        return self._store

    def topology(self, queue: str | None = None) -> Topology:
        """Topology for the saga exchange and an optional listening queue."""
        return saga_topology(self._exchange, queue=queue)

    # ═══════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════

    async def start_saga(
        self, saga_id: str, steps: list[str], initial_data: Any = None
    ) -> SagaInstance:
        """Record *steps* for *saga_id* and publish ``saga.start`` for the first.

        Raises:
            SagaConfigurationError: *steps* is empty or names a step twice.
            SagaStateError: a saga with this id is still in progress.
        """
        if not steps:
            raise SagaConfigurationError(f"Saga {saga_id!r} needs at least one step")
        if len(set(steps)) != len(steps):
            raise SagaConfigurationError(
                f"Saga {saga_id!r} has duplicate step names: {steps}"
            )
        async with self._serialized(saga_id):
            existing = await self._store.get(saga_id)
            if existing is not None and not existing.is_terminal:
                raise SagaStateError(
                    f"Saga {saga_id!r} is already {existing.status.value}"
                )
            instance = SagaInstance(
                saga_id=saga_id,
                steps=list(steps),
                remaining_steps=list(steps),
                data=initial_data,
            )
            await self._store.save(instance)
            logger.info("Starting saga %s with steps %s", saga_id, steps)
            try:
                await self._emit(
                    SAGA_START,
                    SagaStepCommand(
                        saga_id=saga_id,
                        step=steps[0],
                        data=initial_data,
                        remaining_steps=list(steps[1:]),
                    ),
                )
            except Exception:
                await self._store.delete(saga_id)
                raise
            return instance

    async def handle_step_complete(
        self, saga_id: str, completed_step: str, result: Any = None
    ) -> SagaInstance | None:
        """Advance *saga_id* past *completed_step*.

        Publishes ``saga.continue`` for the next step with *result* as its
        data, or ``saga.completed`` after the last step. Returns the updated
        instance, or None when the notice was ignored.
        """
        async with self._serialized(saga_id):
            instance = await self._store.get(saga_id)
            if instance is None:
                logger.warning(
                    "Received step completion for unknown saga %s (step=%s)",
                    saga_id,
                    completed_step,
                )
                return None
            if instance.status is not SagaStatus.ACTIVE:
                logger.warning(
                    "Ignoring completion of %s for saga %s in status %s",
                    completed_step,
                    saga_id,
                    instance.status.value,
                )
                return None
            if instance.current_step != completed_step:
                logger.warning(
                    "Ignoring completion of %s for saga %s: current step is %s",
                    completed_step,
                    saga_id,
                    instance.current_step,
                )
                return None

            remaining = instance.remaining_steps[1:]
            if not remaining:
                await self._emit(
                    SAGA_COMPLETED, SagaCompletedEvent(saga_id=saga_id, result=result)
                )
                await self._store.delete(saga_id)
                instance.status = SagaStatus.COMPLETED
                logger.info("Saga %s completed successfully", saga_id)
            else:
                next_step = remaining[0]
                await self._emit(
                    SAGA_CONTINUE,
                    SagaStepCommand(
                        saga_id=saga_id,
                        step=next_step,
                        data=result,
                        remaining_steps=remaining[1:],
                    ),
                )
                logger.info(
                    "Saga %s continuing with step %s after %s",
                    saga_id,
                    next_step,
                    completed_step,
                )
            instance.remaining_steps = remaining
            instance.completed_steps.append(completed_step)
            instance.data = result
            instance.touch()
            if instance.status is SagaStatus.ACTIVE:
                await self._store.save(instance)
            return instance

    async def handle_step_failed(
        self, saga_id: str, failed_step: str, error: Any = None
    ) -> SagaInstance | None:
        """Compensate every step before *failed_step*, last first, then fail.

        Publishes one ``saga.compensate`` per prior step in reverse start
        order, removes the saga and publishes ``saga.failed``. If a publish
        fails the saga stays ``compensating`` and the call may be repeated.
        Returns the failed instance, or None when the notice was ignored.
        """
        async with self._serialized(saga_id):
            instance = await self._store.get(saga_id)
            if instance is None:
                logger.warning(
                    "Received step failure for unknown saga %s (step=%s)",
                    saga_id,
                    failed_step,
                )
                return None
            if failed_step not in instance.steps:
                logger.warning(
                    "Ignoring failure of unknown step %s for saga %s",
                    failed_step,
                    saga_id,
                )
                return None

            logger.error(
                "Saga %s step %s failed, starting compensation: %s",
                saga_id,
                failed_step,
                error,
            )
            instance.status = SagaStatus.COMPENSATING
            instance.failed_step = failed_step
            instance.error = error
            instance.touch()
            await self._store.save(instance)

            for step in reversed(instance.steps_before(failed_step)):
                await self._emit(
                    SAGA_COMPENSATE,
                    SagaStepCompensation(saga_id=saga_id, step=step, error=error),
                )
                logger.info("Saga %s compensation requested for %s", saga_id, step)

            await self._store.delete(saga_id)
            instance.status = SagaStatus.FAILED
            instance.touch()
            await self._emit(
                SAGA_FAILED,
                SagaFailedEvent(saga_id=saga_id, failed_step=failed_step, error=error),
            )
            return instance

    async def handle_step_outcome(
        self, envelope: MessageEnvelope, context: DeliveryContext
    ) -> None:
        """Message handler for participants' :class:`SagaStepOutcome` reports."""
        try:
            outcome = SagaStepOutcome.model_validate_json(envelope.payload)
        except ValidationError as e:
            raise NonRetryableError(
                f"Malformed saga outcome {envelope.message_id}: {e}"
            ) from e
        if outcome.success:
            await self.handle_step_complete(
                outcome.saga_id, outcome.step, outcome.result
            )
        else:
            await self.handle_step_failed(outcome.saga_id, outcome.step, outcome.error)

    # ═══════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════

    async def get_saga_status(self, saga_id: str) -> SagaInstance | None:
        """Return the in-flight instance for *saga_id*, or None if not tracked."""
        return await self._store.get(saga_id)

    async def active_sagas(self) -> list[str]:
        return [s.saga_id for s in await self._store.list_active()]

    # ═══════════════════════════════════════════════════════════════
    # INTERNALS
    # ═══════════════════════════════════════════════════════════════

    async def _emit(self, routing_key: str, event: SagaEvent) -> None:
        envelope = self._publisher.build(
            routing_key, event.to_wire(), correlation_id=event.saga_id
        )
        if not await self._publisher.publish_envelope(
            self._exchange, routing_key, envelope
        ):
            raise PublishRefusedError(
                f"Broker refused {routing_key!r} for saga {event.saga_id!r}"
            )

    @contextlib.asynccontextmanager
    async def _serialized(self, saga_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(saga_id, asyncio.Lock())
        self._lock_users[saga_id] = self._lock_users.get(saga_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[saga_id] -= 1
            if not self._lock_users[saga_id]:
                del self._lock_users[saga_id]
                del self._locks[saga_id]

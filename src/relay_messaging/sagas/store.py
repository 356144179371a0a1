"""Storage for in-flight saga instances."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from .state import SagaStatus

if TYPE_CHECKING:
    from .state import SagaInstance


@runtime_checkable
class ISagaStore(Protocol):
    """Keeps saga instances between step events."""

    async def get(self, saga_id: str) -> SagaInstance | None: ...

    async def save(self, instance: SagaInstance) -> None: ...

    async def delete(self, saga_id: str) -> None: ...

    async def list_active(self) -> list[SagaInstance]: ...


class InMemorySagaStore:
    """
    Dict-backed :class:`ISagaStore` for single-process deployments and tests.

    Instances are stored as copies so callers cannot mutate stored state.
    """

    def __init__(self) -> None:
        self._sagas: dict[str, SagaInstance] = {}

    async def get(self, saga_id: str) -> SagaInstance | None:
        instance = self._sagas.get(saga_id)
        return instance.model_copy(deep=True) if instance is not None else None

    async def save(self, instance: SagaInstance) -> None:
        self._sagas[instance.saga_id] = instance.model_copy(deep=True)

    async def delete(self, saga_id: str) -> None:
        self._sagas.pop(saga_id, None)

    async def list_active(self) -> list[SagaInstance]:
        return [
            s.model_copy(deep=True)
            for s in self._sagas.values()
            if s.status in (SagaStatus.ACTIVE, SagaStatus.COMPENSATING)
        ]

    def __len__(self) -> int:
        return len(self._sagas)

    def clear(self) -> None:
        """Drop every saga (for testing)."""
        self._sagas.clear()

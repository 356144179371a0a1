"""Health reporting for the messaging core.

Aggregates broker connectivity, circuit breaker states and saga activity
into a report that an HTTP ``/health`` endpoint can return as-is.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from .circuit_breaker import CircuitState

if TYPE_CHECKING:
    from collections.abc import Callable

    from .circuit_breaker import CircuitBreakerRegistry
    from .sagas import SagaOrchestrator

logger = logging.getLogger("relay.health")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthReport(BaseModel):
    """Point-in-time health of the messaging core."""

    model_config = ConfigDict(frozen=True)

    status: HealthStatus
    components: dict[str, str] = Field(default_factory=dict)
    circuit_breakers: dict[str, CircuitState] = Field(default_factory=dict)
    active_sagas: int | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MessagingHealthCheck:
    """
    Health check for the broker connection and the components built on it.

    * ``unhealthy``: the broker (or any registered check) is down.
    * ``degraded``: everything is up but at least one circuit is not closed.
    * ``healthy``: otherwise.

    Every probe is bounded by ``probe_timeout`` seconds; a probe that raises
    or times out counts as down.
    """

    def __init__(
        self,
        transport: Any,
        *,
        breakers: CircuitBreakerRegistry | None = None,
        sagas: SagaOrchestrator | None = None,
        probe_timeout: float = 5.0,
    ) -> None:
        self._transport = transport
        self._breakers = breakers
        self._sagas = sagas
        self._probe_timeout = probe_timeout
        self._checks: dict[str, Callable[[], Any]] = {}

    def register(self, name: str, check: Callable[[], Any]) -> None:
        """Register an extra check; it may return a bool or an awaitable of one."""
        self._checks[name] = check

    async def __call__(self) -> bool:
        report = await self.status()
        return report.status is not HealthStatus.UNHEALTHY

    async def status(self) -> HealthReport:
        components = {"broker": await self._probe("broker", self._broker_up)}
        for name, check in self._checks.items():
            components[name] = await self._probe(name, check)

        breakers: dict[str, CircuitState] = {}
        if self._breakers is not None:
            breakers = {
                name: stats.state
                for name, stats in self._breakers.all_statuses().items()
            }

        active_sagas = None
        if self._sagas is not None:
            try:
                ids = await asyncio.wait_for(
                    self._sagas.active_sagas(), self._probe_timeout
                )
                active_sagas = len(ids)
            except Exception:  # noqa: BLE001
                logger.warning("Could not count active sagas", exc_info=True)

        if any(v != "up" for v in components.values()):
            status = HealthStatus.UNHEALTHY
        elif any(state is not CircuitState.CLOSED for state in breakers.values()):
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        return HealthReport(
            status=status,
            components=components,
            circuit_breakers=breakers,
            active_sagas=active_sagas,
        )

    async def _broker_up(self) -> bool:
        health_check = getattr(self._transport, "health_check", None)
        if callable(health_check):
            result = health_check()
        else:
            result = self._transport.is_connected()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    async def _probe(self, name: str, check: Callable[[], Any]) -> str:
        async def run() -> Any:
            value = check()
            if inspect.isawaitable(value):
                value = await value
            return value

        try:
            value = await asyncio.wait_for(run(), self._probe_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Health probe %s timed out after %.1fs", name, self._probe_timeout
            )
            return "down"
        except Exception:  # noqa: BLE001
            logger.warning("Health probe %s failed", name, exc_info=True)
            return "down"
        return "up" if value else "down"

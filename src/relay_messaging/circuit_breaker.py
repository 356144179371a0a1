"""Circuit breaker for calls to volatile downstream dependencies.

States:
- CLOSED: calls pass through under a per-call timeout; consecutive failures
  are counted and any success resets the count.
- OPEN: calls are rejected with ``CircuitOpenError`` until the cooldown has
  elapsed since the last failure.
- HALF_OPEN: exactly one probe call runs. Success closes the circuit,
  failure reopens it and restarts the cooldown.

Usage::

    breakers = CircuitBreakerRegistry()
    result = await breakers.execute("payment-gateway", lambda: gateway.charge(order))
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ConfigDict

from .exceptions import CircuitOpenError, MessagingTimeoutError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .config import MessagingSettings
    from .metrics import MessagingMetrics

logger = logging.getLogger("relay.circuit_breaker")

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerStats(BaseModel):
    """Point-in-time view of a breaker, for health endpoints."""

    model_config = ConfigDict(frozen=True)

    name: str
    state: CircuitState
    consecutive_failures: int
    failure_threshold: int
    last_failure_at: datetime | None
    total_calls: int
    total_failures: int
    total_timeouts: int
    total_rejected: int


class CircuitBreaker:
    """Guards one named dependency.

    The per-call timeout races the operation against a timer; the operation
    is cancelled when the timer wins, so no reference to its eventual result
    is kept.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        call_timeout: float = 60.0,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: MessagingMetrics | None = None,
    ) -> None:
        """Configure the breaker.

        Args:
            name: Dependency name, used in logs and errors.
            failure_threshold: Consecutive failures that open the circuit.
            call_timeout: Seconds a single call may take; a timeout is a failure.
            reset_timeout: Seconds the circuit stays open before a probe.
            clock: Monotonic time source (injectable for tests).
            metrics: Optional metrics sink for state changes.
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if call_timeout <= 0:
            raise ValueError("call_timeout must be > 0")
        self.name = name
        self.failure_threshold = failure_threshold
        self.call_timeout = call_timeout
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._metrics = metrics

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure: float | None = None
        self._last_failure_at: datetime | None = None
        self._probe_in_flight = False
        self._total_calls = 0
        self._total_failures = 0
        self._total_timeouts = 0
        self._total_rejected = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation* through the breaker.

        Raises:
            CircuitOpenError: the circuit is open (or a probe is already running);
                *operation* is not invoked.
            MessagingTimeoutError: the call exceeded ``call_timeout``.
        """
        probe = self._admit()
        self._total_calls += 1
        try:
            result = await asyncio.wait_for(operation(), self.call_timeout)
        except asyncio.TimeoutError as e:
            self._total_timeouts += 1
            self._on_failure(probe)
            raise MessagingTimeoutError(
                f"circuit:{self.name}", self.call_timeout
            ) from e
        except Exception:
            self._on_failure(probe)
            raise
        except BaseException:
            # Cancelled: neither success nor failure, but release the probe slot.
            if probe:
                self._probe_in_flight = False
            raise
        self._on_success(probe)
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        self._failures = 0
        self._probe_in_flight = False
        self._transition_to(CircuitState.CLOSED)

    def stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            name=self.name,
            state=self._state,
            consecutive_failures=self._failures,
            failure_threshold=self.failure_threshold,
            last_failure_at=self._last_failure_at,
            total_calls=self._total_calls,
            total_failures=self._total_failures,
            total_timeouts=self._total_timeouts,
            total_rejected=self._total_rejected,
        )

    def _admit(self) -> bool:
        """Decide whether a call may proceed; returns True for the probe call."""
        if self._state is CircuitState.OPEN:
            elapsed = self._clock() - (self._last_failure or 0.0)
            if elapsed > self.reset_timeout:
                self._transition_to(CircuitState.HALF_OPEN)
            else:
                self._reject(self.reset_timeout - elapsed)
        if self._state is CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                self._reject(None)
            self._probe_in_flight = True
            return True
        return False

    def _reject(self, retry_after: float | None) -> None:
        self._total_rejected += 1
        logger.debug("Circuit breaker '%s' rejected a call", self.name)
        raise CircuitOpenError(self.name, retry_after=retry_after)

    def _on_success(self, probe: bool) -> None:
        if probe:
            self._probe_in_flight = False
            self._failures = 0
            self._transition_to(CircuitState.CLOSED)
        elif self._state is CircuitState.CLOSED:
            self._failures = 0

    def _on_failure(self, probe: bool) -> None:
        self._total_failures += 1
        if not probe and self._state is not CircuitState.CLOSED:
            # A call admitted before the circuit opened; it must not move the
            # cooldown or the probe.
            return
        self._failures += 1
        self._last_failure = self._clock()
        self._last_failure_at = datetime.now(timezone.utc)
        if probe:
            self._probe_in_flight = False
            self._transition_to(CircuitState.OPEN)
        elif (
            self._state is CircuitState.CLOSED
            and self._failures >= self.failure_threshold
        ):
            self._transition_to(CircuitState.OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        if self._state is new_state:
            return
        old_state, self._state = self._state, new_state
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            "Circuit breaker '%s' transitioned: %s -> %s (failures=%d)",
            self.name,
            old_state.value,
            new_state.value,
            self._failures,
        )
        if self._metrics is not None:
            self._metrics.set_breaker_state(self.name, new_state.value)


class CircuitBreakerRegistry:
    """Component-owned set of breakers, one per dependency name."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        call_timeout: float = 60.0,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: MessagingMetrics | None = None,
    ) -> None:
        self._defaults: dict[str, Any] = {
            "failure_threshold": failure_threshold,
            "call_timeout": call_timeout,
            "reset_timeout": reset_timeout,
            "clock": clock,
            "metrics": metrics,
        }
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(
        cls, settings: MessagingSettings, **kwargs: Any
    ) -> CircuitBreakerRegistry:
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            call_timeout=settings.circuit_call_timeout,
            reset_timeout=settings.circuit_reset_timeout,
            **kwargs,
        )

    def get(self, name: str, **overrides: Any) -> CircuitBreaker:
        """Return the breaker for *name*, creating it on first use."""
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, **{**self._defaults, **overrides})
            self._breakers[name] = breaker
        return breaker

    async def execute(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.get(name).execute(operation)

    def status(self, name: str) -> CircuitBreakerStats | None:
        breaker = self._breakers.get(name)
        return breaker.stats() if breaker is not None else None

    def all_statuses(self) -> dict[str, CircuitBreakerStats]:
        return {name: b.stats() for name, b in self._breakers.items()}

    def reset(self, name: str | None = None) -> None:
        """Reset one breaker, or all of them when *name* is None."""
        targets = [self._breakers[name]] if name in self._breakers else []
        if name is None:
            targets = list(self._breakers.values())
        for breaker in targets:
            breaker.reset()

"""MessagingMetrics: Prometheus counters, histograms and gauges.

Emits:
  - ``relay_messages_total{queue, message_type, outcome}``
  - ``relay_message_duration_seconds{queue, message_type}``
  - ``relay_retries_total{queue}``
  - ``relay_dead_letters_total{queue}``
  - ``relay_circuit_breaker_state{name}`` (0 closed, 1 half-open, 2 open)
  - ``relay_rpc_requests_total{outcome}``
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

_BREAKER_STATE_VALUES = {"CLOSED": 0, "HALF_OPEN": 1, "OPEN": 2}


class MessagingMetrics:
    """Holds the metric families; each instance owns its registry.

    Pass ``registry=prometheus_client.REGISTRY`` to expose the metrics through
    the default ``/metrics`` endpoint.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self.messages = Counter(
            "relay_messages_total",
            "Processed deliveries by outcome",
            ["queue", "message_type", "outcome"],
            registry=self.registry,
        )
        self.duration = Histogram(
            "relay_message_duration_seconds",
            "Handler duration",
            ["queue", "message_type"],
            registry=self.registry,
        )
        self.retries = Counter(
            "relay_retries_total",
            "Messages scheduled for delayed redelivery",
            ["queue"],
            registry=self.registry,
        )
        self.dead_letters = Counter(
            "relay_dead_letters_total",
            "Messages dead-lettered after retries ran out",
            ["queue"],
            registry=self.registry,
        )
        self.breaker_state = Gauge(
            "relay_circuit_breaker_state",
            "Circuit breaker state (0 closed, 1 half-open, 2 open)",
            ["name"],
            registry=self.registry,
        )
        self.rpc_requests = Counter(
            "relay_rpc_requests_total",
            "Request/reply calls by outcome",
            ["outcome"],
            registry=self.registry,
        )

    def observe_delivery(
        self, queue: str, message_type: str, outcome: str, seconds: float
    ) -> None:
        self.messages.labels(
            queue=queue, message_type=message_type, outcome=outcome
        ).inc()
        self.duration.labels(queue=queue, message_type=message_type).observe(seconds)

    def record_retry(self, queue: str) -> None:
        self.retries.labels(queue=queue).inc()

    def record_dead_letter(self, queue: str) -> None:
        self.dead_letters.labels(queue=queue).inc()

    def set_breaker_state(self, name: str, state: str) -> None:
        self.breaker_state.labels(name=name).set(_BREAKER_STATE_VALUES.get(state, 0))

    def record_rpc(self, outcome: str) -> None:
        self.rpc_requests.labels(outcome=outcome).inc()

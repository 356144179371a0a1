"""Tests for MessagingMetrics and TraceIdLogFilter."""

from __future__ import annotations

import logging

from relay_messaging.metrics import MessagingMetrics
from relay_messaging.tracing import TraceIdLogFilter, reset_trace_id, set_trace_id


def test_metrics_use_private_registries() -> None:
    a = MessagingMetrics()
    b = MessagingMetrics()
    a.record_retry("orders")
    assert (
        a.registry.get_sample_value("relay_retries_total", {"queue": "orders"})
        == 1
    )
    assert (
        b.registry.get_sample_value("relay_retries_total", {"queue": "orders"})
        is None
    )


def test_breaker_state_gauge() -> None:
    metrics = MessagingMetrics()
    metrics.set_breaker_state("payments", "HALF_OPEN")
    assert (
        metrics.registry.get_sample_value(
            "relay_circuit_breaker_state", {"name": "payments"}
        )
        == 1.0
    )


def test_observe_delivery() -> None:
    metrics = MessagingMetrics()
    metrics.observe_delivery("orders", "order.created", "rejected", 0.2)
    labels = {"queue": "orders", "message_type": "order.created"}
    assert metrics.registry.get_sample_value(
        "relay_message_duration_seconds_count", labels
    ) == 1.0
    assert metrics.registry.get_sample_value(
        "relay_messages_total", {**labels, "outcome": "rejected"}
    ) == 1.0


def test_trace_id_log_filter() -> None:
    record = logging.LogRecord("relay", logging.INFO, __file__, 1, "msg", None, None)
    log_filter = TraceIdLogFilter()
    assert log_filter.filter(record)
    assert record.trace_id == "-"

    token = set_trace_id("t-42")
    try:
        log_filter.filter(record)
    finally:
        reset_trace_id(token)
    assert record.trace_id == "t-42"

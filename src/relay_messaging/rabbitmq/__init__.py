"""RabbitMQ transport (aio-pika)."""

from __future__ import annotations

from .connection import ConnectionEvent, QueueInfo, RabbitMQConnection
from .consumer import RabbitMQConsumer

__all__ = [
    "ConnectionEvent",
    "QueueInfo",
    "RabbitMQConnection",
    "RabbitMQConsumer",
]

"""In-memory transport for tests and local development."""

from __future__ import annotations

from .broker import InMemoryBroker, PublishedMessage, topic_matches

__all__ = ["InMemoryBroker", "PublishedMessage", "topic_matches"]

"""BatchProcessor: hand deliveries to a handler in groups."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .context import DeliveryContext
    from .envelope import MessageEnvelope

logger = logging.getLogger("relay.batch")


class BatchProcessor:
    """
    Message handler that buffers deliveries and flushes them together.

    A batch is flushed when it reaches ``batch_size`` or ``flush_interval``
    seconds after its first message arrived. Every delivery of a successful
    batch is acked; every delivery of a failed batch is rejected. Each call
    returns only once its batch has been settled, so the consumer's prefetch
    must be at least ``batch_size`` for full batches to form.

    Usage::

        processor = BatchProcessor(store_rows, batch_size=50, flush_interval=1.0)
        await transport.consume("metrics.ingest", processor, ConsumeOptions(
            prefetch_count=50,
        ))
    """

    def __init__(
        self,
        handler: Callable[[list[MessageEnvelope]], Awaitable[None]],
        batch_size: int = 10,
        flush_interval: float = 5.0,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if flush_interval <= 0:
            raise ValueError("flush_interval must be > 0")
        self._handler = handler
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._pending: list[
            tuple[MessageEnvelope, DeliveryContext, asyncio.Future[None]]
        ] = []
        self._timer: asyncio.Task[None] | None = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def __call__(
        self, envelope: MessageEnvelope, context: DeliveryContext
    ) -> None:
        settled: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending.append((envelope, context, settled))
        if len(self._pending) >= self._batch_size:
            await self.flush()
        elif self._timer is None:
            self._timer = asyncio.create_task(self._flush_later())
        await settled

    async def flush(self) -> None:
        """Run the handler on everything buffered so far."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch, self._pending = self._pending, []
        if not batch:
            return
        try:
            await self._handler([envelope for envelope, _, _ in batch])
        except Exception:
            logger.exception("Batch of %d messages failed; rejecting all", len(batch))
            for _, context, _ in batch:
                await context.reject()
        else:
            logger.debug("Batch of %d messages processed", len(batch))
            for _, context, _ in batch:
                await context.ack()
        finally:
            for _, _, settled in batch:
                if not settled.done():
                    settled.set_result(None)

    async def close(self) -> None:
        """Flush whatever is still buffered."""
        await self.flush()

    async def _flush_later(self) -> None:
        await asyncio.sleep(self._flush_interval)
        self._timer = None
        await self.flush()

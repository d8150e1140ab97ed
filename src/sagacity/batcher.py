"""Batch processor -- coalesces submitted items into size/time bounded batches."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_BATCH_SIZE = 10
BATCH_INTERVAL = 5.0

_CLOSED = object()


class BatchProcessor(Generic[T]):
    """Buffers items and hands them to *handler* in arrival order.

    A batch is flushed as soon as ``max_batch_size`` items are buffered or
    ``batch_interval`` seconds have passed since the previous flush,
    whichever comes first.  Empty flushes never reach the handler.
    ``close()`` flushes whatever is still buffered before the loop exits.
    """

    def __init__(
        self,
        handler: Callable[[list[T]], Awaitable[None]],
        *,
        max_batch_size: int = MAX_BATCH_SIZE,
        batch_interval: float = BATCH_INTERVAL,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self._handler = handler
        self.max_batch_size = max_batch_size
        self.batch_interval = batch_interval
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self.flush_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="batch-processor")
        return self._task

    async def submit(self, item: T) -> None:
        if self._closed:
            raise RuntimeError("BatchProcessor is closed")
        await self._queue.put(item)

    async def close(self) -> None:
        """Stop accepting items, flush the buffer and wait for the loop."""
        if self._closed:
            return
        self._closed = True
        if self._task is None:
            # Never started: hand over whatever was submitted, in order.
            buffer: list[T] = []
            while not self._queue.empty():
                buffer.append(self._queue.get_nowait())  # type: ignore[arg-type]
            for i in range(0, len(buffer), self.max_batch_size):
                await self._flush(buffer[i:i + self.max_batch_size])
            return
        await self._queue.put(_CLOSED)
        await self._task

    async def _flush(self, buffer: list[T]) -> None:
        if not buffer:
            return
        batch = list(buffer)
        buffer.clear()
        self.flush_count += 1
        logger.debug("Flushing batch of %d item(s)", len(batch))
        try:
            await self._handler(batch)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Batch handler failed for %d item(s)", len(batch))

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        buffer: list[T] = []
        last_flush = loop.time()
        getter: asyncio.Future[object] | None = None
        try:
            while True:
                remaining = self.batch_interval - (loop.time() - last_flush)
                if remaining <= 0:
                    await self._flush(buffer)
                    last_flush = loop.time()
                    continue

                if getter is None:
                    getter = asyncio.ensure_future(self._queue.get())
                done, _ = await asyncio.wait({getter}, timeout=remaining)
                if not done:
                    continue  # interval elapsed; flushed at the top of the loop

                item = getter.result()
                getter = None
                if item is _CLOSED:
                    break
                buffer.append(item)  # type: ignore[arg-type]
                if len(buffer) >= self.max_batch_size:
                    await self._flush(buffer)
                    last_flush = loop.time()
        finally:
            if getter is not None:
                getter.cancel()
        await self._flush(buffer)

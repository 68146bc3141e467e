"""FIFO write serialization for the entry store.

Every mutation is submitted as a zero-argument coroutine factory and run
by a single worker task, one at a time, in submission order. Callers wait
on a shielded future: abandoning the wait leaves the operation queued and
it still runs to completion.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from membank.errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[Any]]


def _consume_result(fut: asyncio.Future) -> None:
    # Marks the exception as retrieved when the caller stopped waiting.
    if not fut.cancelled():
        fut.exception()


class TransactionSerializer:
    """Single-consumer queue of store operations."""

    def __init__(self, name: str = "store") -> None:
        self.name = name
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None
        self._closed = False

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_worker(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name=f"membank-serializer-{self.name}"
            )
        return self._queue

    async def queue_operation(self, op: Callable[[], Awaitable[T]]) -> T:
        """Enqueue ``op`` and wait for its result.

        Exceptions raised by ``op`` reach only this caller; later operations
        are unaffected.
        """
        if self._closed:
            raise StorageError(f"serializer {self.name} is closed", operation="queue")
        queue = self._ensure_worker()
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        fut.add_done_callback(_consume_result)
        queue.put_nowait((op, fut))
        return await asyncio.shield(fut)

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                op, fut = item
                try:
                    result = await op()
                except (asyncio.CancelledError, KeyboardInterrupt, SystemExit) as e:
                    # Worker is stopping: fail this caller and every queued one.
                    if not fut.done():
                        if isinstance(e, asyncio.CancelledError):
                            fut.cancel()
                        else:
                            fut.set_exception(e)
                    self._abandon_pending()
                    raise
                except BaseException as e:
                    if not fut.done():
                        fut.set_exception(e)
                else:
                    if not fut.done():
                        fut.set_result(result)
            finally:
                self._queue.task_done()

    def _abandon_pending(self) -> None:
        assert self._queue is not None
        abandoned = 0
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None and not item[1].done():
                item[1].cancel()
                abandoned += 1
            self._queue.task_done()
        if abandoned:
            logger.warning("Serializer %s stopped; cancelled %d queued operations", self.name, abandoned)

    async def drain(self) -> None:
        """Wait until everything queued so far has run."""
        if self._queue is not None and self._worker is not None and not self._worker.done():
            await self._queue.join()

    async def close(self) -> None:
        """Run remaining operations, then stop the worker."""
        if self._closed:
            return
        self._closed = True
        if self._queue is None or self._worker is None or self._worker.done():
            return
        self._queue.put_nowait(None)
        await self._worker
        logger.debug("Serializer %s stopped", self.name)

"""
Ordered queue of catalog registrations waiting for storage readiness.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from shared.errors import CatalogError
from shared.logging import get_logger

Job = Callable[[], Awaitable[None]]


class InitializerState(str, Enum):
    PENDING = "pending"
    FLUSHING = "flushing"
    FLUSHED = "flushed"


class CatalogInitializer:
    """Registrations made before storage is ready are queued here.

    The queue is flushed exactly once, in submission order, by `flush()`.
    Jobs submitted while the flush is running are appended to the queue and
    run after everything queued before them. Once flushed, jobs run
    immediately in the caller's task.
    """

    def __init__(self, after_flush: Optional[Job] = None):
        self.logger = get_logger("permissions.catalog.initializer")
        self.state = InitializerState.PENDING
        self._queue: List[Tuple[Job, Optional[asyncio.Future]]] = []
        self._after_flush = after_flush

    @property
    def flushed(self) -> bool:
        return self.state == InitializerState.FLUSHED

    @property
    def pending(self) -> int:
        return len(self._queue)

    def enqueue(self, job: Job) -> None:
        """Queue a job without awaiting it. Only valid before the flush."""
        if self.state != InitializerState.PENDING:
            raise CatalogError("Catalog is already initialized; use register() instead of declare()")
        self._queue.append((job, None))

    async def submit(self, job: Job) -> None:
        """Queue a job before readiness, or run it now once flushed."""
        if self.state == InitializerState.PENDING:
            self._queue.append((job, None))
            return
        if self.state == InitializerState.FLUSHING:
            waiter = asyncio.get_running_loop().create_future()
            self._queue.append((job, waiter))
            await waiter
            return
        await job()

    async def flush(self) -> int:
        """Run every queued job in order; later calls are no-ops."""
        if self.state != InitializerState.PENDING:
            return 0

        self.state = InitializerState.FLUSHING
        count = 0
        try:
            while self._queue:
                job, waiter = self._queue.pop(0)
                try:
                    await job()
                except Exception as e:
                    if waiter is not None:
                        waiter.set_exception(e)
                    raise
                if waiter is not None:
                    waiter.set_result(None)
                count += 1
        finally:
            self.state = InitializerState.FLUSHED
            self._fail_remaining()

        self.logger.info("Catalog registrations flushed", count=count)
        if self._after_flush is not None:
            await self._after_flush()
        return count

    def _fail_remaining(self):
        """Jobs left behind by a failed flush are dropped, loudly."""
        if not self._queue:
            return
        self.logger.error("Dropping catalog registrations after failed flush", count=len(self._queue))
        for _, waiter in self._queue:
            if waiter is not None and not waiter.done():
                waiter.set_exception(CatalogError("Catalog flush failed before this registration ran"))
        self._queue.clear()

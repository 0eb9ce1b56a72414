"""
Single-flight memoization of an async resolution.
"""

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class AsyncMemo(Generic[T]):
    """Runs `factory` at most once and hands every caller the same result.

    Callers racing on the first `get()` wait on the same in-flight task.
    If the resolution fails, every waiter sees the error and the memo is
    cleared so the next `get()` starts over. A cancelled caller does not
    cancel the shared resolution.
    """

    def __init__(self, factory: Callable[[], Awaitable[T]]):
        self._factory = factory
        self._task: Optional[asyncio.Future] = None
        self.calls = 0

    @property
    def resolved(self) -> bool:
        return (
            self._task is not None
            and self._task.done()
            and not self._task.cancelled()
            and self._task.exception() is None
        )

    async def get(self) -> T:
        if self._task is None:
            self.calls += 1
            self._task = asyncio.ensure_future(self._factory())
        task = self._task
        try:
            return await asyncio.shield(task)
        except Exception:
            if self._task is task and task.done():
                self._task = None
            raise

"""
Request Queue
-------------
Serializes Provider API calls in submission order.

One drain loop at a time pops a thunk, awaits it, then waits a fixed
minimum interval before the next, smoothing bursts even when no rate
limit is active. The loop starts lazily on the first submission and
exits when the queue is empty.
"""

from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple
import asyncio

from core.clock import Clock
from infra.logging import get_logger

Thunk = Callable[[], Awaitable[Any]]


class QueueCleared(Exception):
    """Raised to callers whose queued request was dropped by clear()."""


class RequestQueue:
    """FIFO of pending calls drained by a single task."""

    def __init__(self, clock: Optional[Clock] = None, min_interval: float = 0.1):
        self._clock = clock or Clock()
        self.min_interval = min_interval
        self._pending: Deque[Tuple[Thunk, asyncio.Future]] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._logger = get_logger("api.queue")

    def submit(self, thunk: Thunk) -> "asyncio.Future[Any]":
        """Queue a call; the returned future settles with its result or exception."""
        future = asyncio.get_running_loop().create_future()
        self._pending.append((thunk, future))
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())
        return future

    async def _drain(self) -> None:
        while self._pending:
            thunk, future = self._pending.popleft()
            if future.cancelled():
                continue

            try:
                result = await thunk()
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)

            await self._clock.sleep(self.min_interval)

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def is_processing(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def clear(self) -> int:
        """Fail every queued (not yet started) request. Returns how many were dropped."""
        dropped = 0
        while self._pending:
            _, future = self._pending.popleft()
            if not future.done():
                future.set_exception(QueueCleared("Queue cleared"))
            dropped += 1
        if dropped:
            self._logger.info(f"Dropped {dropped} queued requests")
        return dropped

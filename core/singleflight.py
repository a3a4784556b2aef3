"""
Single Flight
-------------
At most one running task per key; concurrent callers share it.
"""

from typing import Awaitable, Callable, Dict, Generic, Hashable, TypeVar
import asyncio

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """
    One shared task per key.

    Callers of run() for a key that is already in flight await the same
    task instead of starting another. The key is released as soon as the
    task settles, before any waiter resumes, so the next run() starts fresh.
    """

    def __init__(self):
        self._tasks: Dict[Hashable, "asyncio.Task[T]"] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        return await asyncio.shield(task)

    async def wait(self, key: Hashable) -> None:
        """Wait until nothing is in flight for key. Failures belong to run() callers."""
        while key in self._tasks:
            task = self._tasks[key]
            await asyncio.wait({task})

    def _release(self, key: Hashable, task: "asyncio.Task[T]") -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

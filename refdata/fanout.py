"""
Chunked Fan-Out
---------------
Split a large ID list into fixed-size chunks and run at most N chunk
workers at once against the bulk API.

Workers are asyncio tasks pulling the next unclaimed chunk from a
shared index, so the number of simultaneous HTTP calls is bounded
without blocking the event loop.
"""

from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar
import asyncio

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CONCURRENCY = 3


def chunked(items: Sequence[T], size: int) -> List[List[T]]:
    """Consecutive slices of at most `size` items."""
    if size <= 0:
        raise ValueError(f"Chunk size must be positive, got: {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


async def map_chunked(
    items: Sequence[T],
    chunk_size: int,
    worker: Callable[[List[T]], Awaitable[R]],
    concurrency: int = DEFAULT_CONCURRENCY,
    on_result: Optional[Callable[[R], None]] = None,
) -> List[R]:
    """
    Run `worker` over every chunk with bounded concurrency.

    Returns per-chunk results in chunk order. `on_result`, when given, is
    called as each chunk completes, for merging incrementally. The first
    worker exception cancels the remaining workers and propagates once
    they have stopped; chunks not yet claimed are never started.
    """
    if concurrency <= 0:
        raise ValueError(f"Concurrency must be positive, got: {concurrency}")

    chunks = chunked(items, chunk_size)
    if not chunks:
        return []

    results: List[Optional[R]] = [None] * len(chunks)
    next_index = 0

    async def run_worker() -> None:
        nonlocal next_index
        while next_index < len(chunks):
            index = next_index
            next_index += 1
            result = await worker(chunks[index])
            results[index] = result
            if on_result is not None:
                on_result(result)

    workers = min(concurrency, len(chunks))
    tasks = [asyncio.ensure_future(run_worker()) for _ in range(workers)]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return results  # type: ignore[return-value]

"""
Clock
-----
Wall-clock time and sleeping behind one seam.

Every suspension point in the request layer (inter-request delay,
backoff wait, coalescing window) sleeps through a Clock so tests can
drive time without waiting for it.
"""

import asyncio
import time


class Clock:
    """Real time: epoch seconds and asyncio sleep."""

    def time(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))

"""
Batch Coalescer
---------------
Merges concurrent lookups for the same kind of entity into one bulk call.

Rules:
- The first request for a kind opens a pending batch and starts a timer
  (fixed delay, measured from that first arrival).
- Requests arriving while the timer runs add their IDs to the same batch.
- When the timer fires the pending set is swapped out and dispatched.
  IDs arriving after that go into the next batch.
- At most one batch per kind is on the network at a time; the next one
  waits for the current one to settle before dispatching.
- A request whose IDs are already on the network awaits that batch and
  only puts the uncovered IDs into the next one.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Generic, Iterable, List, Optional, Set, TypeVar
import asyncio

from core.clock import Clock
from core.singleflight import SingleFlight
from infra.logging import get_logger

V = TypeVar("V")

logger = get_logger("refdata.coalescer")


@dataclass
class _Batch:
    ids: Set[int] = field(default_factory=set)
    task: Optional[asyncio.Task] = None


class BatchCoalescer(Generic[V]):
    """
    Coalescing window plus single-flight dispatch for one entity kind.

    dispatch receives the sorted, de-duplicated IDs of one batch and
    returns whatever it could resolve. Its exceptions reach every caller
    waiting on that batch.
    """

    def __init__(
        self,
        kind: str,
        dispatch: Callable[[List[int]], Awaitable[Dict[int, V]]],
        delay: float,
        clock: Optional[Clock] = None,
        flight: Optional[SingleFlight] = None,
    ):
        self.kind = kind
        self.delay = delay
        self._dispatch = dispatch
        self._clock = clock or Clock()
        self._flight = flight if flight is not None else SingleFlight()
        self._pending: Optional[_Batch] = None
        self._in_flight: Optional[_Batch] = None
        self.dispatch_count = 0

    @property
    def pending_ids(self) -> Set[int]:
        return set(self._pending.ids) if self._pending else set()

    @property
    def in_flight_ids(self) -> Set[int]:
        return set(self._in_flight.ids) if self._in_flight else set()

    async def load(self, ids: Iterable[int]) -> Dict[int, V]:
        """Resolve ids through the current or next batch."""
        wanted = set(ids)
        if not wanted:
            return {}

        waits = []
        in_flight = self._in_flight
        if in_flight is not None:
            covered = wanted & in_flight.ids
            if covered:
                waits.append((in_flight, covered))
                wanted -= covered

        if wanted:
            batch = self._pending
            if batch is None:
                batch = self._open_batch()
            batch.ids |= wanted
            waits.append((batch, wanted))

        results: Dict[int, V] = {}
        for batch, batch_ids in waits:
            found = await asyncio.shield(batch.task)
            for i in batch_ids:
                if i in found:
                    results[i] = found[i]
        return results

    def _open_batch(self) -> _Batch:
        batch = _Batch()
        batch.task = asyncio.ensure_future(self._run_batch(batch))
        self._pending = batch
        return batch

    async def _run_batch(self, batch: _Batch) -> Dict[int, V]:
        await self._clock.sleep(self.delay)
        await self._flight.wait(self.kind)

        if self._pending is batch:
            self._pending = None
        self._in_flight = batch
        ids = sorted(batch.ids)
        self.dispatch_count += 1
        logger.debug(f"Dispatching {self.kind} batch of {len(ids)} ids")

        try:
            return await self._flight.run(self.kind, lambda: self._dispatch(ids))
        finally:
            if self._in_flight is batch:
                self._in_flight = None

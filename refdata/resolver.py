"""
Reference Resolvers
-------------------
Turn numeric IDs into named entities via the bulk reference API.

Flow for resolve(ids):
1. IDs already in the store (real or placeholder) are returned directly.
2. The rest join the kind's coalescing batch.
3. The batch is split into chunks and fetched with bounded concurrency.
4. IDs present in a successful chunk are saved; requested IDs missing
   from a successful chunk are saved as placeholders.
5. A failed chunk saves nothing, so its IDs are requested again on the
   next call. Batch failures are logged, never raised.
"""

from typing import Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

from pydantic import ValidationError

from core.clock import Clock
from core.errors import ESIError
from core.singleflight import SingleFlight
from core.store import EntityStore, InMemoryEntityStore
from infra.logging import get_logger

from .client import RefAPIClient
from .coalescer import BatchCoalescer
from .fanout import DEFAULT_CONCURRENCY, map_chunked
from .models import CachedLocation, CachedType, RefMoonBulkResponse, RefTypeBulkResponse

E = TypeVar("E")

ChunkOutcome = Tuple[List[int], Optional[Dict[int, E]]]

PLAYER_STRUCTURE_MIN_ID = 1_000_000_000_000

# (low, high_exclusive, location type, placeholder label)
LOCATION_RANGES: List[Tuple[int, int, str, str]] = [
    (60_000_000, 70_000_000, "station", "Station"),
    (50_000_000, 60_000_000, "stargate", "Stargate"),
    (40_000_000, 50_000_000, "celestial", "Celestial"),
    (30_000_000, 40_000_000, "system", "System"),
    (20_000_000, 30_000_000, "constellation", "Constellation"),
    (10_000_000, 20_000_000, "region", "Region"),
]


def classify_location(location_id: int) -> Tuple[str, str]:
    """(type, placeholder label) for a location ID by numeric range."""
    for low, high, kind, label in LOCATION_RANGES:
        if low <= location_id < high:
            return kind, label
    return "other", "Location"


def is_celestial(location_id: int) -> bool:
    return 40_000_000 <= location_id < 50_000_000


class BulkResolver(Generic[E]):
    """Store-first, coalesced, chunked lookup for one entity kind."""

    kind = "entity"
    endpoint = ""

    def __init__(
        self,
        ref_client: RefAPIClient,
        store: Optional[EntityStore] = None,
        *,
        delay: float = 0.05,
        chunk_size: int = 1000,
        concurrency: int = DEFAULT_CONCURRENCY,
        clock: Optional[Clock] = None,
        flight: Optional[SingleFlight] = None,
    ):
        self.ref = ref_client
        self.store = store if store is not None else InMemoryEntityStore()
        self.chunk_size = chunk_size
        self.concurrency = concurrency
        self.coalescer: BatchCoalescer[E] = BatchCoalescer(
            self.kind, self._fetch_batch, delay, clock=clock, flight=flight
        )
        self._logger = get_logger(f"refdata.{self.kind}")

    async def resolve(self, ids: Iterable[int]) -> Dict[int, E]:
        """Resolve ids to entities. IDs that could not be resolved are absent."""
        results: Dict[int, E] = {}
        misses: List[int] = []

        for entity_id in dict.fromkeys(ids):
            if not self._accepts(entity_id):
                continue
            cached = self.store.get(entity_id)
            if cached is not None:
                results[entity_id] = cached
            else:
                misses.append(entity_id)

        misses = await self._resolve_locally(misses, results)
        if not misses:
            return results

        try:
            fetched = await self.coalescer.load(misses)
        except (ESIError, ValidationError) as e:
            self._logger.error(f"{self.kind} batch failed for {len(misses)} ids: {e}")
            return results

        results.update(fetched)
        return results

    async def resolve_one(self, entity_id: int) -> Optional[E]:
        return (await self.resolve([entity_id])).get(entity_id)

    def invalidate(self, ids: Optional[Iterable[int]] = None) -> int:
        """
        Drop cached placeholders so they are requested again.

        With ids, only those placeholders; otherwise every placeholder
        the store holds. Real entities are never dropped.
        """
        if ids is None:
            values = getattr(self.store, "values", None)
            if values is None:
                return 0
            targets = [e.id for e in values() if getattr(e, "placeholder", False)]
        else:
            targets = [
                i for i in ids
                if getattr(self.store.get(i), "placeholder", False)
            ]
        removed = self.store.delete_many(targets)
        if removed:
            self._logger.info(f"Invalidated {removed} {self.kind} placeholders")
        return removed

    # --- hooks -----------------------------------------------------------

    def _accepts(self, entity_id: int) -> bool:
        return entity_id > 0

    async def _resolve_locally(self, ids: List[int], results: Dict[int, E]) -> List[int]:
        """Resolve what needs no network; return the IDs still to fetch."""
        return ids

    def _parse(self, raw) -> Dict[int, E]:
        raise NotImplementedError

    def _placeholder(self, entity_id: int) -> E:
        raise NotImplementedError

    # --- batch dispatch --------------------------------------------------

    async def _fetch_batch(self, ids: List[int]) -> Dict[int, E]:
        outcomes = await map_chunked(ids, self.chunk_size, self._fetch_chunk, self.concurrency)

        resolved: Dict[int, E] = {}
        placeholders = 0
        failed = 0
        for requested, found in outcomes:
            if found is None:
                failed += len(requested)
                continue
            for entity_id in requested:
                entity = found.get(entity_id)
                if entity is None:
                    entity = self._placeholder(entity_id)
                    placeholders += 1
                resolved[entity_id] = entity

        if resolved:
            await self.store.save_many(list(resolved.values()))

        self._logger.debug(
            f"{self.kind} batch: {len(resolved) - placeholders} resolved, "
            f"{placeholders} placeholders, {failed} failed"
        )
        return resolved

    async def _fetch_chunk(self, chunk: List[int]) -> ChunkOutcome:
        try:
            raw = await self.ref.post_ids(self.endpoint, chunk)
            found = self._parse(raw)
        except ESIError as e:
            self._logger.error(f"{self.kind} chunk of {len(chunk)} failed: {e}")
            return chunk, None
        except ValidationError as e:
            self._logger.error(f"{self.kind} chunk of {len(chunk)} returned invalid data: {e.error_count()} errors")
            return chunk, None
        return chunk, found


class TypeResolver(BulkResolver[CachedType]):
    """Item types from /reference/types; unknown IDs become 'Unknown Type {id}'."""

    kind = "types"
    endpoint = "/reference/types"

    def _parse(self, raw) -> Dict[int, CachedType]:
        response = RefTypeBulkResponse.model_validate(raw)
        return {int(key): CachedType.from_ref(item) for key, item in response.items.items()}

    def _placeholder(self, entity_id: int) -> CachedType:
        return CachedType.unknown(entity_id)


class LocationResolver(BulkResolver[CachedLocation]):
    """
    Location names by ID range.

    Player structures are skipped (they need an authenticated lookup).
    Celestials are bulk-fetched from /reference/moons; every other range
    gets a range-derived placeholder immediately.
    """

    kind = "locations"
    endpoint = "/reference/moons"

    def _accepts(self, entity_id: int) -> bool:
        return 0 < entity_id < PLAYER_STRUCTURE_MIN_ID

    async def _resolve_locally(self, ids: List[int], results: Dict[int, CachedLocation]) -> List[int]:
        remote = [i for i in ids if is_celestial(i)]
        local = [self._placeholder(i) for i in ids if not is_celestial(i)]
        if local:
            await self.store.save_many(local)
            results.update({loc.id: loc for loc in local})
        return remote

    def _parse(self, raw) -> Dict[int, CachedLocation]:
        response = RefMoonBulkResponse.model_validate(raw)
        return {int(key): CachedLocation.from_moon(item) for key, item in response.items.items()}

    def _placeholder(self, entity_id: int) -> CachedLocation:
        kind, label = classify_location(entity_id)
        return CachedLocation(id=entity_id, name=f"{label} {entity_id}", type=kind, placeholder=True)

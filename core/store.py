"""
Reference Store
---------------
Interface to the long-lived key/value store behind the resolvers.

The real store (persistent, shared with the UI) lives outside this
package; InMemoryEntityStore is the session-scoped implementation used
when none is injected, and in tests.
"""

from typing import Dict, Generic, Iterable, List, Optional, Protocol, TypeVar
import asyncio

E = TypeVar("E")


class EntityStore(Protocol[E]):
    """Lookup by numeric ID, bulk save (one writer at a time) and bulk delete."""

    def get(self, entity_id: int) -> Optional[E]:
        ...

    async def save_many(self, entities: Iterable[E]) -> None:
        ...

    def delete_many(self, entity_ids: Iterable[int]) -> int:
        ...


class InMemoryEntityStore(Generic[E]):
    """Dictionary-backed EntityStore; entities must expose an `id`."""

    def __init__(self, initial: Optional[Iterable[E]] = None):
        self._items: Dict[int, E] = {}
        self._write_lock = asyncio.Lock()
        self.save_calls = 0
        for entity in initial or ():
            self._items[entity.id] = entity

    def get(self, entity_id: int) -> Optional[E]:
        return self._items.get(entity_id)

    def has(self, entity_id: int) -> bool:
        return entity_id in self._items

    async def save_many(self, entities: Iterable[E]) -> None:
        async with self._write_lock:
            self.save_calls += 1
            for entity in entities:
                self._items[entity.id] = entity

    def delete_many(self, entity_ids: Iterable[int]) -> int:
        removed = 0
        for entity_id in entity_ids:
            if self._items.pop(entity_id, None) is not None:
                removed += 1
        return removed

    def values(self) -> List[E]:
        return list(self._items.values())

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

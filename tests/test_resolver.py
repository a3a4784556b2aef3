"""
Reference Resolver Tests
------------------------
Tests for store-first resolution, placeholders and batch coalescing.

Tests cover:
- Known IDs resolved and saved, unknown IDs saved as placeholders
- No placeholders when a batch fails
- Concurrent overlapping requests coalesced into one call
- Location ranges, structures and celestials
"""

import asyncio
import json

import httpx
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.context import ServiceContext
from core.store import InMemoryEntityStore
from refdata.models import CachedType
from refdata.resolver import classify_location
from conftest import Recorder

TYPES = {
    34: {"id": 34, "name": "Tritanium", "groupId": 18, "volume": 0.01},
    35: {"id": 35, "name": "Pyerite", "groupId": 18, "volume": 0.01},
    587: {"id": 587, "name": "Rifter", "groupId": 25, "volume": 27289, "packagedVolume": 2500},
}

MOONS = {
    40009082: {"id": 40009082, "name": "Jita IV - Moon 4", "systemId": 30000142},
}


def bulk_handler(catalog, fail=False):
    def handler(request):
        if fail:
            return httpx.Response(500)
        ids = json.loads(request.content)["ids"]
        items = {str(i): catalog[i] for i in ids if i in catalog}
        return httpx.Response(200, content=json.dumps({"items": items}).encode())
    return handler


def requested_ids(recorder):
    return [sorted(json.loads(r.content)["ids"]) for r in recorder.requests]


def make_context(settings, clock, handler, **kwargs):
    recorder = Recorder(handler)
    ctx = ServiceContext.create(settings, clock=clock, ref_http=recorder.client(), **kwargs)
    return ctx, recorder


class TestTypeResolver:
    """Tests for type resolution."""

    @pytest.mark.asyncio
    async def test_resolves_and_saves(self, settings, clock):
        ctx, recorder = make_context(settings, clock, bulk_handler(TYPES))

        result = await ctx.types.resolve([34, 587])

        assert result[34].name == "Tritanium"
        assert result[587].packaged_volume == 2500
        assert ctx.types.store.get(34).group_id == 18
        assert recorder.requests[0].url.path == "/api/v1/reference/types"

    @pytest.mark.asyncio
    async def test_unknown_becomes_placeholder(self, settings, clock):
        """An ID absent from a successful response is cached as a placeholder."""
        ctx, recorder = make_context(settings, clock, bulk_handler(TYPES))

        result = await ctx.types.resolve([34, 99999])

        placeholder = result[99999]
        assert placeholder.name == "Unknown Type 99999"
        assert placeholder.group_id == 0
        assert placeholder.category_id == 0
        assert placeholder.volume == 0
        assert placeholder.placeholder

        await ctx.types.resolve([99999])
        assert recorder.count == 1

    @pytest.mark.asyncio
    async def test_failure_caches_nothing(self, settings, clock):
        """A failed batch leaves its IDs uncached so the next call retries."""
        ctx, recorder = make_context(settings, clock, bulk_handler(TYPES, fail=True))

        result = await ctx.types.resolve([34, 99999])

        assert result == {}
        assert len(ctx.types.store) == 0

        await ctx.types.resolve([34])
        assert recorder.count == 2

    @pytest.mark.asyncio
    async def test_cached_ids_skip_network(self, settings, clock):
        store = InMemoryEntityStore([CachedType(id=34, name="Tritanium")])
        ctx, recorder = make_context(settings, clock, bulk_handler(TYPES), type_store=store)

        result = await ctx.types.resolve([34])

        assert result[34].name == "Tritanium"
        assert recorder.count == 0

    @pytest.mark.asyncio
    async def test_overlapping_requests_coalesce(self, settings, clock):
        """resolve([1,2,3]) and resolve([3,4,5]) together make one call for 1..5."""
        ctx, recorder = make_context(settings, clock, bulk_handler(TYPES))

        first, second = await asyncio.gather(
            ctx.types.resolve([1, 2, 3]), ctx.types.resolve([3, 4, 5])
        )

        assert requested_ids(recorder) == [[1, 2, 3, 4, 5]]
        assert set(first) == {1, 2, 3}
        assert set(second) == {3, 4, 5}

    @pytest.mark.asyncio
    async def test_same_id_dispatched_once(self, settings, clock):
        ctx, recorder = make_context(settings, clock, bulk_handler(TYPES))

        results = await asyncio.gather(*(ctx.types.resolve([587]) for _ in range(5)))

        assert recorder.count == 1
        assert all(r[587].name == "Rifter" for r in results)

    @pytest.mark.asyncio
    async def test_chunked_partial_failure(self, settings, clock):
        """Only the failed chunk stays unresolved."""
        settings.type_chunk_size = 2

        def handler(request):
            ids = json.loads(request.content)["ids"]
            if 587 in ids:
                return httpx.Response(503)
            return bulk_handler(TYPES)(request)

        ctx, recorder = make_context(settings, clock, handler)

        result = await ctx.types.resolve([34, 35, 587, 600])

        assert recorder.count == 2
        assert set(result) == {34, 35}
        assert ctx.types.store.get(587) is None
        assert ctx.types.store.get(600) is None

    @pytest.mark.asyncio
    async def test_invalidate_refetches_placeholder(self, settings, clock):
        ctx, recorder = make_context(settings, clock, bulk_handler(TYPES))
        await ctx.types.resolve([34, 99999])

        assert ctx.types.invalidate([34, 99999]) == 1
        await ctx.types.resolve([34, 99999])

        assert requested_ids(recorder) == [[34, 99999], [99999]]


class TestLocationResolver:
    """Tests for location ranges."""

    def test_classify_ranges(self):
        assert classify_location(60003760) == ("station", "Station")
        assert classify_location(30000142) == ("system", "System")
        assert classify_location(10000002) == ("region", "Region")
        assert classify_location(5) == ("other", "Location")

    @pytest.mark.asyncio
    async def test_structures_skipped(self, settings, clock):
        ctx, recorder = make_context(settings, clock, bulk_handler(MOONS))

        result = await ctx.locations.resolve([1_035_466_617_946])

        assert result == {}
        assert recorder.count == 0

    @pytest.mark.asyncio
    async def test_non_celestials_named_locally(self, settings, clock):
        ctx, recorder = make_context(settings, clock, bulk_handler(MOONS))

        result = await ctx.locations.resolve([60003760, 30000142])

        assert result[60003760].name == "Station 60003760"
        assert result[30000142].type == "system"
        assert recorder.count == 0

    @pytest.mark.asyncio
    async def test_celestials_fetched(self, settings, clock):
        ctx, recorder = make_context(settings, clock, bulk_handler(MOONS))

        result = await ctx.locations.resolve([40009082, 40000001])

        assert result[40009082].name == "Jita IV - Moon 4"
        assert result[40009082].solar_system_id == 30000142
        assert result[40000001].name == "Celestial 40000001"
        assert recorder.requests[0].url.path == "/api/v1/reference/moons"


class TestServiceContext:
    """Tests for context-level actions."""

    @pytest.mark.asyncio
    async def test_clear_caches_keeps_reference_store(self, settings, clock):
        ctx, _ = make_context(settings, clock, bulk_handler(TYPES))
        await ctx.types.resolve([34])
        ctx.cache.put(("public", "/status"), {}, '"e"', clock.now + 60)

        ctx.clear_caches()

        assert len(ctx.cache) == 0
        assert ctx.types.store.get(34) is not None
        await ctx.close()

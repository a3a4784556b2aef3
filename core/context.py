"""
Service Context
---------------
Explicit wiring of every request-layer component.

One context per application session. Every caller going through the
same context shares its response cache, rate-limit tracker, backoff
deadline and request queue, so a rate limit hit by one caller delays
the others. Separate contexts share nothing, which is what tests want.

Usage:
    async with ServiceContext.create(settings, credentials=resolver) as ctx:
        assets = await fetch_paginated(ctx.esi, f"/characters/{cid}/assets", character_id=cid)
        names = await ctx.types.resolve(a["type_id"] for a in assets)
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import httpx

from api.cache import ResponseCache
from api.client import ESIClient
from api.health import ESIHealthChecker
from api.queue import RequestQueue
from api.rate_limiter import RateLimitTracker
from infra.config import ClientSettings
from infra.logging import get_logger
from refdata.client import RefAPIClient
from refdata.models import CachedLocation, CachedType
from refdata.resolver import LocationResolver, TypeResolver

from .clock import Clock
from .credentials import CredentialResolver
from .singleflight import SingleFlight
from .store import EntityStore, InMemoryEntityStore

logger = get_logger("core.context")


@dataclass
class ServiceContext:
    settings: ClientSettings
    clock: Clock
    cache: ResponseCache
    rate_limiter: RateLimitTracker
    queue: RequestQueue
    esi: ESIClient
    ref: RefAPIClient
    health: ESIHealthChecker
    types: TypeResolver
    locations: LocationResolver
    flight: SingleFlight

    @classmethod
    def create(
        cls,
        settings: Optional[ClientSettings] = None,
        *,
        credentials: Optional[CredentialResolver] = None,
        clock: Optional[Clock] = None,
        type_store: Optional[EntityStore[CachedType]] = None,
        location_store: Optional[EntityStore[CachedLocation]] = None,
        esi_http: Optional[httpx.AsyncClient] = None,
        ref_http: Optional[httpx.AsyncClient] = None,
    ) -> "ServiceContext":
        """Build a fully wired context. Omitted collaborators get defaults."""
        settings = settings or ClientSettings()
        clock = clock or Clock()

        cache = ResponseCache()
        rate_limiter = RateLimitTracker(
            clock=clock,
            warn_remaining=settings.rate_limit_warn_remaining,
            error_warn_remaining=settings.error_limit_warn_remaining,
        )
        queue = RequestQueue(clock, settings.min_request_interval)
        esi = ESIClient(
            settings,
            credentials=credentials,
            cache=cache,
            rate_limiter=rate_limiter,
            queue=queue,
            http_client=esi_http,
            clock=clock,
        )
        ref = RefAPIClient(settings, http_client=ref_http, clock=clock)
        health = ESIHealthChecker(settings, http_client=esi_http, clock=clock)

        flight = SingleFlight()
        types = TypeResolver(
            ref,
            type_store if type_store is not None else InMemoryEntityStore(),
            delay=settings.type_coalesce_delay,
            chunk_size=settings.type_chunk_size,
            concurrency=settings.chunk_concurrency,
            clock=clock,
            flight=flight,
        )
        locations = LocationResolver(
            ref,
            location_store if location_store is not None else InMemoryEntityStore(),
            delay=settings.location_coalesce_delay,
            chunk_size=settings.location_chunk_size,
            concurrency=settings.chunk_concurrency,
            clock=clock,
            flight=flight,
        )

        return cls(
            settings=settings,
            clock=clock,
            cache=cache,
            rate_limiter=rate_limiter,
            queue=queue,
            esi=esi,
            ref=ref,
            health=health,
            types=types,
            locations=locations,
            flight=flight,
        )

    @classmethod
    def from_config(
        cls,
        config_path: Optional[Union[str, Path]] = None,
        credentials: Optional[CredentialResolver] = None,
    ) -> "ServiceContext":
        return cls.create(ClientSettings.load(config_path), credentials=credentials)

    def set_credentials(self, credentials: CredentialResolver) -> None:
        self.esi.set_credentials(credentials)

    def clear_caches(self) -> None:
        """Drop every cached provider response. Reference entities are kept."""
        entries = len(self.cache)
        self.cache.clear()
        logger.info(f"Cleared {entries} cached responses")

    async def close(self) -> None:
        self.queue.clear()
        await self.esi.close()
        await self.ref.close()
        await self.health.close()

    async def __aenter__(self) -> "ServiceContext":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

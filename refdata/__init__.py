# Reference data module - Bulk reference API, coalescing and resolvers

from .client import RefAPIClient
from .coalescer import BatchCoalescer
from .fanout import chunked, map_chunked
from .models import CachedType, CachedLocation
from .resolver import TypeResolver, LocationResolver, classify_location

__all__ = [
    "RefAPIClient",
    "BatchCoalescer",
    "chunked",
    "map_chunked",
    "CachedType",
    "CachedLocation",
    "TypeResolver",
    "LocationResolver",
    "classify_location",
]

"""
Response Cache
--------------
In-memory ETag/Expires cache for Provider API responses.

Rules:
- An entry is served without a network call only while now < expires_at
- Expired entries are kept and offered as If-None-Match validators
  until overwritten or cleared
- No eviction: the map grows for the session lifetime
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .types import PUBLIC_IDENTITY

CacheKey = Tuple[str, str]


@dataclass
class CacheEntry:
    """Cached payload with its validator and expiry (epoch seconds)."""
    data: Any
    etag: str
    expires_at: float
    x_pages: Optional[int] = None

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at

    def ttl(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


def normalize_endpoint(endpoint: str) -> str:
    """
    Canonical form of an endpoint for cache keys.

    Query parameters are sorted so `?page=2&a=1` and `?a=1&page=2` share
    an entry; a missing leading slash is added.
    """
    parts = urlsplit(endpoint)
    path = parts.path if parts.path.startswith("/") else f"/{parts.path}"
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit(("", "", path, query, ""))


def make_key(identity: Union[int, str, None], endpoint: str) -> CacheKey:
    """Cache key: owning identity (or the public sentinel) + normalized endpoint."""
    owner = PUBLIC_IDENTITY if identity is None else str(identity)
    return owner, normalize_endpoint(endpoint)


class ResponseCache:
    """Map from (identity, endpoint) to CacheEntry."""

    def __init__(self):
        self._entries: Dict[CacheKey, CacheEntry] = {}

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        """Entry for key, fresh or stale."""
        return self._entries.get(key)

    def get_fresh(self, key: CacheKey, now: float) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(now):
            return entry
        return None

    def put(
        self,
        key: CacheKey,
        data: Any,
        etag: str,
        expires_at: float,
        x_pages: Optional[int] = None,
    ) -> None:
        self._entries[key] = CacheEntry(data=data, etag=etag, expires_at=expires_at, x_pages=x_pages)

    def refresh_expiry(self, key: CacheKey, expires_at: float, x_pages: Optional[int] = None) -> bool:
        """Extend an existing entry after a 304. Returns False if absent."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        entry.expires_at = expires_at
        if x_pages is not None:
            entry.x_pages = x_pages
        return True

    def delete(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

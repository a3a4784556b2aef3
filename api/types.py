"""
Provider API Types
------------------
Request options and response envelopes shared by the scheduler,
queue and pagination driver.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")

# Identity segment of the cache key for anonymous requests
PUBLIC_IDENTITY = "public"


@dataclass
class RequestOptions:
    """Options for one Provider API call."""
    method: str = "GET"
    body: Optional[Any] = None
    character_id: Optional[int] = None
    requires_auth: bool = True
    skip_queue: bool = False
    schema: Optional[Any] = None  # pydantic model or type accepted by TypeAdapter
    headers: Dict[str, str] = field(default_factory=dict)
    etag: Optional[str] = None    # explicit conditional validator


@dataclass
class ESIResult(Generic[T]):
    """Outcome of one executed call, before it is unwrapped for the caller."""
    data: T
    status: int
    expires_at: Optional[float] = None
    etag: Optional[str] = None
    not_modified: bool = False
    from_cache: bool = False
    x_pages: Optional[int] = None


@dataclass
class ResponseMeta(Generic[T]):
    """Data plus caching metadata, returned by the *_with_meta calls."""
    data: T
    expires_at: Optional[float]
    etag: Optional[str]
    not_modified: bool
    x_pages: Optional[int] = None

    @classmethod
    def from_result(cls, result: "ESIResult[T]") -> "ResponseMeta[T]":
        return cls(
            data=result.data,
            expires_at=result.expires_at,
            etag=result.etag,
            not_modified=result.not_modified,
            x_pages=result.x_pages,
        )

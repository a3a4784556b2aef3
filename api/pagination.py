"""
Pagination Driver
-----------------
Sequential multi-page fetches for X-Pages endpoints.

Page N is requested only after page N-1 completes; each page goes back
through the scheduler's queue, auth and backoff path. Any failing page
aborts the whole fetch and discards what was collected.
"""

from typing import Any, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from core.errors import ValidationFailed
from infra.logging import get_logger

from .client import ESIClient
from .types import ESIResult, RequestOptions, ResponseMeta

logger = get_logger("api.pagination")


def with_page(endpoint: str, page: int) -> str:
    """Set (or replace) the page query parameter."""
    parts = urlsplit(endpoint)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "page"]
    query.append(("page", str(page)))
    return urlunsplit(("", "", parts.path, urlencode(query), ""))


async def fetch_paginated_with_meta(
    client: ESIClient,
    endpoint: str,
    options: Optional[RequestOptions] = None,
) -> ResponseMeta:
    """Fetch every page; metadata comes from the last page."""
    options = options or RequestOptions()
    results: List[Any] = []
    page = 1
    total_pages = 1
    last: Optional[ESIResult] = None

    while True:
        paged = with_page(endpoint, page)
        result = await client.request(paged, options)

        if not isinstance(result.data, list):
            raise ValidationFailed(f"Expected a list page from {paged}, got {type(result.data).__name__}")
        results.extend(result.data)
        last = result

        if page == 1 and result.x_pages:
            total_pages = result.x_pages
            if total_pages > 1:
                logger.debug(f"{endpoint}: {total_pages} pages", extra={"endpoint": endpoint})

        if page >= total_pages:
            break
        page += 1
        await client.clock.sleep(client.settings.min_request_interval)

    return ResponseMeta(
        data=results,
        expires_at=last.expires_at,
        etag=last.etag,
        not_modified=last.not_modified,
        x_pages=total_pages,
    )


async def fetch_paginated(
    client: ESIClient,
    endpoint: str,
    *,
    character_id: Optional[int] = None,
    requires_auth: bool = True,
    schema: Optional[Any] = None,
) -> List[Any]:
    """
    Fetch all pages of a paged endpoint and concatenate them in page order.

    schema, when given, validates each item (the page is validated as a
    list of schema).
    """
    options = RequestOptions(
        character_id=character_id,
        requires_auth=requires_auth,
        schema=List[schema] if schema is not None else None,
    )
    meta = await fetch_paginated_with_meta(client, endpoint, options)
    return meta.data

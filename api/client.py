"""
ESI Client
----------
Request scheduler for the Provider API.

Every call goes through one path:
1. queued (FIFO, fixed spacing) unless skip_queue is set
2. wait out any global backoff
3. fresh cache hit -> return, no network
4. headers (+ bearer token when auth is required)
5. stale cache entry -> If-None-Match
6. send, then branch on status: 429/420, 304, non-2xx, 2xx

The scheduler never retries. Retry decisions belong to callers and to
the passage of the backoff deadline.
"""

from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional
import logging

import httpx
from pydantic import TypeAdapter, ValidationError

from core.clock import Clock
from core.credentials import CredentialResolver
from core.errors import (
    CredentialRevoked,
    CredentialUnavailable,
    NotAuthenticated,
    RateLimited,
    RequestFailed,
    TransportError,
    ValidationFailed,
)
from infra.config import ClientSettings
from infra.logging import RequestContext, get_logger

from .cache import ResponseCache, make_key
from .queue import RequestQueue
from .rate_limiter import RateLimitTracker, parse_retry_after
from .types import ESIResult, RequestOptions, ResponseMeta

RATE_LIMIT_STATUSES = frozenset({420, 429})
HTTP_NOT_MODIFIED = 304


def parse_expires(value: Optional[str]) -> Optional[float]:
    """HTTP-date Expires header to epoch seconds, None when absent or invalid."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    return parsed.timestamp()


def _validate(raw: Any, schema: Any, endpoint: str, logger: logging.Logger) -> Any:
    if schema is None:
        return raw
    try:
        return TypeAdapter(schema).validate_python(raw)
    except ValidationError as e:
        issues = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()[:3]
        ]
        logger.error(
            f"ESI response validation failed for {endpoint}: {issues}",
            extra={"endpoint": endpoint},
        )
        raise ValidationFailed(f"ESI response validation failed: {issues[0] if issues else e}", issues) from e


class ESIClient:
    """
    Provider API scheduler.

    Shares its cache, rate-limit tracker and queue with every caller of
    the owning ServiceContext.
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        credentials: Optional[CredentialResolver] = None,
        cache: Optional[ResponseCache] = None,
        rate_limiter: Optional[RateLimitTracker] = None,
        queue: Optional[RequestQueue] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or ClientSettings()
        self.clock = clock or Clock()
        self.credentials = credentials
        self.cache = cache or ResponseCache()
        self.rate_limiter = rate_limiter or RateLimitTracker(
            clock=self.clock,
            warn_remaining=self.settings.rate_limit_warn_remaining,
            error_warn_remaining=self.settings.error_limit_warn_remaining,
        )
        self.queue = queue or RequestQueue(self.clock, self.settings.min_request_interval)
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.settings.request_timeout)
        self._logger = get_logger("api.client")

    def set_credentials(self, credentials: CredentialResolver) -> None:
        self.credentials = credentials

    # --- public surface --------------------------------------------------

    async def fetch(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        body: Optional[Any] = None,
        character_id: Optional[int] = None,
        requires_auth: bool = True,
        skip_queue: bool = False,
        schema: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Fetch an endpoint and return its (validated) data."""
        options = RequestOptions(
            method=method,
            body=body,
            character_id=character_id,
            requires_auth=requires_auth,
            skip_queue=skip_queue,
            schema=schema,
            headers=dict(headers or {}),
        )
        result = await self.request(endpoint, options)
        return result.data

    async def fetch_public(self, endpoint: str, *, skip_queue: bool = False, schema: Optional[Any] = None) -> Any:
        return await self.fetch(endpoint, requires_auth=False, skip_queue=skip_queue, schema=schema)

    async def fetch_with_meta(self, endpoint: str, options: Optional[RequestOptions] = None) -> ResponseMeta:
        """Like fetch, but returns expiry/etag metadata alongside the data."""
        result = await self.request(endpoint, options or RequestOptions())
        return ResponseMeta.from_result(result)

    async def request(self, endpoint: str, options: RequestOptions) -> ESIResult:
        """Run one call through the queue (or directly when skip_queue is set)."""
        if options.skip_queue:
            return await self._execute(endpoint, options)
        return await self.queue.submit(lambda: self._execute(endpoint, options))

    def clear_cache(self) -> None:
        self.cache.clear()

    def get_rate_limit_info(self) -> Dict[str, Any]:
        remaining = self.rate_limiter.remaining_backoff()
        return {
            "is_limited": remaining > 0,
            "retry_after": remaining if remaining > 0 else None,
            "queue_length": len(self.queue),
        }

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "ESIClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    # --- execution -------------------------------------------------------

    async def _execute(self, endpoint: str, options: RequestOptions) -> ESIResult:
        with RequestContext():
            await self.rate_limiter.wait_for_backoff()

            key = make_key(options.character_id, endpoint)
            now = self.clock.time()
            cached = self.cache.get(key)

            if cached is not None and cached.is_fresh(now) and options.etag is None:
                self._logger.debug(
                    f"ESI cache hit {endpoint} (expires in {cached.ttl(now):.0f}s)",
                    extra={"endpoint": endpoint},
                )
                return ESIResult(
                    data=cached.data,
                    status=200,
                    expires_at=cached.expires_at,
                    etag=cached.etag,
                    not_modified=True,
                    from_cache=True,
                    x_pages=cached.x_pages,
                )

            headers = await self._build_headers(options)
            validator = options.etag or (cached.etag if cached is not None else None)
            if validator:
                headers["If-None-Match"] = validator

            response = await self._send(endpoint, options, headers)
            return self._handle_response(endpoint, key, options, response)

    async def _build_headers(self, options: RequestOptions) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Compatibility-Date": self.settings.compatibility_date,
            "User-Agent": self.settings.user_agent,
        }
        headers.update(options.headers)

        if options.requires_auth:
            token = await self._get_token(options.character_id)
            headers["Authorization"] = f"Bearer {token}"

        return headers

    async def _get_token(self, character_id: Optional[int]) -> str:
        if self.credentials is None:
            raise NotAuthenticated("No credential resolver configured", character_id)
        try:
            token = await self.credentials.get_token(character_id)
        except CredentialRevoked as e:
            raise NotAuthenticated(str(e) or "Credential revoked", character_id, permanent=True) from e
        except CredentialUnavailable as e:
            raise NotAuthenticated(str(e) or "Token refresh failed", character_id) from e
        if not token:
            raise NotAuthenticated("Failed to get access token", character_id)
        return token

    async def _send(self, endpoint: str, options: RequestOptions, headers: Dict[str, str]) -> httpx.Response:
        url = f"{self.settings.esi_base_url.rstrip('/')}{endpoint}"
        kwargs: Dict[str, Any] = {"headers": headers}
        if options.body is not None:
            if isinstance(options.body, (str, bytes)):
                kwargs["content"] = options.body
            else:
                kwargs["json"] = options.body

        self._logger.debug(f"ESI request {options.method} {endpoint}", extra={"endpoint": endpoint})
        try:
            response = await self._http.request(options.method, url, **kwargs)
        except httpx.TimeoutException as e:
            self._logger.error(f"ESI request timed out: {endpoint}", extra={"endpoint": endpoint})
            raise TransportError(f"Request timed out: {endpoint}") from e
        except httpx.HTTPError as e:
            self._logger.error(f"ESI network error for {endpoint}: {e}", extra={"endpoint": endpoint})
            raise TransportError(f"Network error: {e}") from e

        self._logger.debug(
            f"ESI response {response.status_code} {endpoint}",
            extra={"endpoint": endpoint, "status": response.status_code},
        )
        return response

    def _handle_response(
        self,
        endpoint: str,
        key,
        options: RequestOptions,
        response: httpx.Response,
    ) -> ESIResult:
        headers = response.headers
        status = response.status_code
        self.rate_limiter.update_from_headers(headers, endpoint, options.character_id)

        if status in RATE_LIMIT_STATUSES:
            wait = parse_retry_after(headers.get("Retry-After"), self.settings.default_retry_after)
            self.rate_limiter.set_global_retry_after(wait)
            self._logger.error(
                f"ESI rate limit ({status}), backing off {wait:g}s",
                extra={"endpoint": endpoint, "status": status, "retry_after": wait},
            )
            raise RateLimited(status, wait)

        expires_at = parse_expires(headers.get("Expires"))
        etag = headers.get("ETag")
        x_pages = _parse_pages(headers)

        if status == HTTP_NOT_MODIFIED:
            cached = self.cache.get(key)
            if cached is not None:
                if expires_at is not None:
                    self.cache.refresh_expiry(key, expires_at, x_pages)
                return ESIResult(
                    data=cached.data,
                    status=status,
                    expires_at=cached.expires_at,
                    etag=etag or cached.etag,
                    not_modified=True,
                    x_pages=x_pages or cached.x_pages,
                )

        if not response.is_success:
            message = _error_message(response)
            self._logger.error(
                f"ESI request failed: {endpoint} ({status})",
                extra={"endpoint": endpoint, "status": status},
            )
            raise RequestFailed(status, message)

        try:
            raw = response.json() if response.content else None
        except ValueError as e:
            raise ValidationFailed(f"ESI response is not valid JSON: {endpoint}") from e

        data = _validate(raw, options.schema, endpoint, self._logger)

        if etag and expires_at is not None:
            self.cache.put(key, data, etag, expires_at, x_pages)

        return ESIResult(
            data=data,
            status=status,
            expires_at=expires_at,
            etag=etag,
            not_modified=False,
            x_pages=x_pages,
        )


def _parse_pages(headers: Mapping[str, str]) -> Optional[int]:
    value = headers.get("X-Pages")
    if value is None:
        return None
    try:
        pages = int(value)
    except ValueError:
        return None
    return pages if pages > 0 else None


def _error_message(response: httpx.Response) -> Optional[str]:
    """The `error` field of a JSON error body, if there is one."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), str) and body["error"]:
        return body["error"]
    return None

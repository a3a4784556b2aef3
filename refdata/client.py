"""
Reference API Client
--------------------
HTTP client for the bulk reference API (types, moons, universe lists).

Differs from the ESI scheduler:
- no queue; callers may run several requests concurrently
- request starts are spaced by a minimum interval
- its own global backoff, set from 429 Retry-After
- retries 429s and transport failures with exponential delay
"""

from typing import Any, Dict, Iterable, Optional
import asyncio

import httpx

from core.clock import Clock
from core.errors import RateLimited, RequestFailed, TransportError, ValidationFailed
from infra.config import ClientSettings
from infra.logging import get_logger

HTTP_TOO_MANY_REQUESTS = 429


class RefAPIClient:
    """Rate-spaced, retrying client for the bulk reference API."""

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or ClientSettings()
        self.clock = clock or Clock()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.settings.ref_request_timeout)
        self._spacing_lock = asyncio.Lock()
        self._last_request = 0.0
        self._retry_after_until = 0.0
        self._logger = get_logger("refdata.client")

    # --- public surface --------------------------------------------------

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", endpoint, params=params)

    async def post(self, endpoint: str, body: Any) -> Any:
        return await self._request("POST", endpoint, json=body)

    async def post_ids(self, endpoint: str, ids: Iterable[int]) -> Any:
        """POST {"ids": [...]} to a bulk lookup endpoint."""
        return await self.post(endpoint, {"ids": list(ids)})

    def set_global_backoff(self, seconds: float) -> None:
        retry_at = self.clock.time() + seconds
        if retry_at > self._retry_after_until:
            self._retry_after_until = retry_at
            self._logger.warning(f"Ref API global backoff set for {seconds:g}s")

    def remaining_backoff(self) -> float:
        return max(0.0, self._retry_after_until - self.clock.time())

    @property
    def headers(self) -> Dict[str, str]:
        headers = {"User-Agent": self.settings.user_agent}
        if self.settings.ref_app_key:
            headers["X-App-Key"] = self.settings.ref_app_key
        return headers

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "RefAPIClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    # --- execution -------------------------------------------------------

    async def _wait_turn(self) -> None:
        async with self._spacing_lock:
            backoff = self.remaining_backoff()
            if backoff > 0:
                await self.clock.sleep(backoff)

            since_last = self.clock.time() - self._last_request
            if since_last < self.settings.ref_min_request_interval:
                await self.clock.sleep(self.settings.ref_min_request_interval - since_last)

            self._last_request = self.clock.time()

    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        await self._wait_turn()
        url = f"{self.settings.ref_base_url.rstrip('/')}{endpoint}"
        response = await self._send_with_retry(method, url, endpoint, **kwargs)

        if response.status_code == HTTP_TOO_MANY_REQUESTS:
            raise RateLimited(response.status_code, self.remaining_backoff())
        if not response.is_success:
            self._logger.error(f"Ref API {endpoint} failed: HTTP {response.status_code}")
            raise RequestFailed(response.status_code, f"HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise ValidationFailed(f"Ref API response is not valid JSON: {endpoint}") from e

    async def _send_with_retry(self, method: str, url: str, endpoint: str, **kwargs) -> httpx.Response:
        max_retries = self.settings.ref_max_retries
        base_delay = self.settings.ref_retry_base_delay
        last_error: Optional[Exception] = None

        for attempt in range(max_retries + 1):
            try:
                response = await self._http.request(method, url, headers=self.headers, **kwargs)
            except httpx.HTTPError as e:
                last_error = e
                if attempt < max_retries:
                    delay = base_delay * (2 ** attempt)
                    self._logger.warning(
                        f"Ref API request failed, retrying in {delay:g}s "
                        f"(attempt {attempt + 1}): {e}"
                    )
                    await self.clock.sleep(delay)
                continue

            if response.status_code == HTTP_TOO_MANY_REQUESTS:
                delay = _retry_after(response.headers.get("Retry-After"))
                if delay is None:
                    delay = base_delay * (2 ** attempt)
                self.set_global_backoff(delay)
                if attempt < max_retries:
                    self._logger.warning(
                        f"Ref API rate limited, retrying in {delay:g}s (attempt {attempt + 1})"
                    )
                    await self.clock.sleep(delay)
                    continue

            return response

        self._logger.error(f"Ref API {endpoint} failed after {max_retries + 1} attempts: {last_error}")
        if isinstance(last_error, httpx.TimeoutException):
            raise TransportError(f"Request timed out: {endpoint}") from last_error
        raise TransportError(f"Network error: {last_error}") from last_error


def _retry_after(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None

"""
ESI Client Tests
----------------
Tests for the request scheduler.

Tests cover:
- Cache hits, conditional requests and 304 handling
- Global backoff after 429/420
- Authentication failures (transient vs permanent)
- Error mapping and response validation
"""

import json

import httpx
import pytest
from pydantic import BaseModel
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.client import ESIClient, parse_expires
from api.types import RequestOptions
from core.credentials import StaticCredentialResolver, StoredToken
from core.errors import (
    CredentialRevoked, NotAuthenticated, RateLimited, RequestFailed,
    TransportError, ValidationFailed
)
from conftest import FakeClock, Recorder, http_date


class ServerStatus(BaseModel):
    players: int
    server_version: str


def json_response(body, status=200, headers=None):
    return httpx.Response(status, content=json.dumps(body).encode(), headers=headers or {})


def make_client(settings, clock, handler, credentials=None):
    recorder = Recorder(handler)
    client = ESIClient(settings, credentials=credentials, http_client=recorder.client(), clock=clock)
    return client, recorder


def resolver_for(clock, character_id=1):
    return StaticCredentialResolver(
        tokens={character_id: StoredToken("token-abc", clock.now + 3600)},
        clock=clock.time,
    )


class TestCaching:
    """Tests for ETag/Expires caching."""

    @pytest.mark.asyncio
    async def test_fresh_entry_skips_network(self, settings, clock):
        """A second call before expiry makes no network call."""
        def handler(request):
            return json_response({"players": 1}, headers={"ETag": '"v1"', "Expires": http_date(clock.now + 300)})

        client, recorder = make_client(settings, clock, handler)

        first = await client.fetch_public("/status/")
        second = await client.fetch_public("/status/")

        assert first == second == {"players": 1}
        assert recorder.count == 1

    @pytest.mark.asyncio
    async def test_stale_entry_sends_validator(self, settings, clock):
        """After expiry the cached ETag goes out as If-None-Match."""
        def handler(request):
            if request.headers.get("If-None-Match") == '"v1"':
                return httpx.Response(304, headers={"ETag": '"v1"', "Expires": http_date(clock.now + 300)})
            return json_response({"players": 1}, headers={"ETag": '"v1"', "Expires": http_date(clock.now + 300)})

        client, recorder = make_client(settings, clock, handler)

        await client.fetch_public("/status/")
        clock.advance(301)
        data = await client.fetch_public("/status/")

        assert recorder.count == 2
        assert recorder.requests[1].headers["If-None-Match"] == '"v1"'
        assert data == {"players": 1}

    @pytest.mark.asyncio
    async def test_not_modified_refreshes_expiry(self, settings, clock):
        """A 304 extends the entry, so the next call is served from cache."""
        def handler(request):
            headers = {"ETag": '"v1"', "Expires": http_date(clock.now + 300)}
            if request.headers.get("If-None-Match"):
                return httpx.Response(304, headers=headers)
            return json_response([1, 2, 3], headers=headers)

        client, recorder = make_client(settings, clock, handler)

        await client.fetch_public("/markets/prices/")
        clock.advance(301)
        meta = await client.fetch_with_meta("/markets/prices/", RequestOptions(requires_auth=False))
        third = await client.fetch_public("/markets/prices/")

        assert meta.not_modified
        assert meta.data == [1, 2, 3]
        assert third == [1, 2, 3]
        assert recorder.count == 2

    @pytest.mark.asyncio
    async def test_no_validator_no_cache(self, settings, clock):
        """Responses without ETag and Expires are not cached."""
        client, recorder = make_client(settings, clock, lambda r: json_response({"ok": True}))

        await client.fetch_public("/status/")
        await client.fetch_public("/status/")

        assert recorder.count == 2
        assert len(client.cache) == 0

    @pytest.mark.asyncio
    async def test_fresh_hit_meta(self, settings, clock):
        """fetch_with_meta reports a cache hit as not modified."""
        def handler(request):
            return json_response({"players": 1}, headers={"ETag": '"v1"', "Expires": http_date(clock.now + 300)})

        client, _ = make_client(settings, clock, handler)
        options = RequestOptions(requires_auth=False)

        first = await client.fetch_with_meta("/status/", options)
        second = await client.fetch_with_meta("/status/", options)

        assert not first.not_modified
        assert second.not_modified
        assert second.etag == '"v1"'

    @pytest.mark.asyncio
    async def test_cache_scoped_by_identity(self, settings, clock):
        """Two identities never share an entry."""
        def handler(request):
            return json_response({"who": request.headers["Authorization"]},
                                 headers={"ETag": '"x"', "Expires": http_date(clock.now + 300)})

        credentials = StaticCredentialResolver(
            tokens={
                1: StoredToken("one", clock.now + 3600),
                2: StoredToken("two", clock.now + 3600),
            },
            clock=clock.time,
        )
        client, recorder = make_client(settings, clock, handler, credentials)

        a = await client.fetch("/characters/me/wallet/", character_id=1)
        b = await client.fetch("/characters/me/wallet/", character_id=2)

        assert a != b
        assert recorder.count == 2


class TestBackoff:
    """Tests for the global backoff deadline."""

    @pytest.mark.asyncio
    async def test_rate_limited_delays_next_call(self, settings, clock):
        """After a 429 with Retry-After 30 the next call goes out 30s later."""
        sent_at = []

        def handler(request):
            sent_at.append(clock.now)
            if len(sent_at) == 1:
                return httpx.Response(429, headers={"Retry-After": "30"})
            return json_response({"ok": True})

        client, _ = make_client(settings, clock, handler)

        with pytest.raises(RateLimited) as exc:
            await client.fetch_public("/markets/prices/")
        assert exc.value.retry_after == 30
        assert exc.value.status == 429

        await client.fetch_public("/status/")

        assert sent_at[1] - sent_at[0] >= 30

    @pytest.mark.asyncio
    async def test_420_is_rate_limit(self, settings, clock):
        client, _ = make_client(settings, clock, lambda r: httpx.Response(420))

        with pytest.raises(RateLimited) as exc:
            await client.fetch_public("/status/")

        assert exc.value.retry_after == settings.default_retry_after
        assert client.get_rate_limit_info()["is_limited"]

    @pytest.mark.asyncio
    async def test_unrelated_callers_share_deadline(self, settings, clock):
        """A backoff set by one identity delays another."""
        sent_at = []

        def handler(request):
            sent_at.append(clock.now)
            if len(sent_at) == 1:
                return httpx.Response(429, headers={"Retry-After": "10"})
            return json_response([])

        client, _ = make_client(settings, clock, handler, resolver_for(clock))

        with pytest.raises(RateLimited):
            await client.fetch("/characters/1/assets/", character_id=1)
        await client.fetch_public("/universe/types/")

        assert sent_at[1] - sent_at[0] >= 10


class TestAuthentication:
    """Tests for credential handling."""

    @pytest.mark.asyncio
    async def test_bearer_and_standard_headers(self, settings, clock):
        client, recorder = make_client(settings, clock, lambda r: json_response({}), resolver_for(clock))

        await client.fetch("/characters/1/wallet/", character_id=1)

        headers = recorder.requests[0].headers
        assert headers["Authorization"] == "Bearer token-abc"
        assert headers["X-Compatibility-Date"] == settings.compatibility_date
        assert headers["User-Agent"] == settings.user_agent

    @pytest.mark.asyncio
    async def test_missing_token_is_transient(self, settings, clock):
        """No token and no network call; the error is retryable."""
        client, recorder = make_client(settings, clock, lambda r: json_response({}), resolver_for(clock))

        with pytest.raises(NotAuthenticated) as exc:
            await client.fetch("/characters/99/wallet/", character_id=99)

        assert not exc.value.permanent
        assert exc.value.is_retryable
        assert recorder.count == 0

    @pytest.mark.asyncio
    async def test_no_resolver(self, settings, clock):
        client, recorder = make_client(settings, clock, lambda r: json_response({}))

        with pytest.raises(NotAuthenticated):
            await client.fetch("/characters/1/wallet/", character_id=1)
        assert recorder.count == 0

    @pytest.mark.asyncio
    async def test_revoked_is_permanent(self, settings, clock):
        async def refresher(character_id, refresh_token):
            raise CredentialRevoked("invalid_grant")

        credentials = StaticCredentialResolver(
            tokens={1: StoredToken("old", clock.now - 10, refresh_token="r")},
            refresher=refresher,
            clock=clock.time,
        )
        client, _ = make_client(settings, clock, lambda r: json_response({}), credentials)

        with pytest.raises(NotAuthenticated) as exc:
            await client.fetch("/characters/1/wallet/", character_id=1)

        assert exc.value.permanent
        assert not exc.value.is_retryable


class TestErrors:
    """Tests for non-2xx and shape failures."""

    @pytest.mark.asyncio
    async def test_error_body_message(self, settings, clock):
        client, _ = make_client(
            settings, clock, lambda r: json_response({"error": "Character not found"}, status=404)
        )

        with pytest.raises(RequestFailed) as exc:
            await client.fetch_public("/characters/5/")

        assert exc.value.status == 404
        assert str(exc.value) == "Character not found"

    @pytest.mark.asyncio
    async def test_generic_message_without_body(self, settings, clock):
        client, _ = make_client(settings, clock, lambda r: httpx.Response(502, content=b"Bad Gateway"))

        with pytest.raises(RequestFailed) as exc:
            await client.fetch_public("/status/")

        assert str(exc.value) == "ESI request failed: 502"

    @pytest.mark.asyncio
    async def test_schema_mismatch(self, settings, clock):
        client, _ = make_client(settings, clock, lambda r: json_response({"players": "many"}))

        with pytest.raises(ValidationFailed) as exc:
            await client.fetch_public("/status/", schema=ServerStatus)

        assert exc.value.issues

    @pytest.mark.asyncio
    async def test_schema_match_returns_model(self, settings, clock):
        client, _ = make_client(
            settings, clock, lambda r: json_response({"players": 20000, "server_version": "1"})
        )

        status = await client.fetch_public("/status/", schema=ServerStatus)

        assert status.players == 20000

    @pytest.mark.asyncio
    async def test_invalid_json(self, settings, clock):
        client, _ = make_client(settings, clock, lambda r: httpx.Response(200, content=b"<html>"))

        with pytest.raises(ValidationFailed):
            await client.fetch_public("/status/")

    @pytest.mark.asyncio
    async def test_transport_failure(self, settings, clock):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = make_client(settings, clock, handler)

        with pytest.raises(TransportError):
            await client.fetch_public("/status/")


class TestQueueing:
    """Tests for queue bypass and reporting."""

    @pytest.mark.asyncio
    async def test_skip_queue_has_no_spacing(self, settings, clock):
        client, recorder = make_client(settings, clock, lambda r: json_response({}))

        await client.fetch_public("/status/", skip_queue=True)

        assert recorder.count == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_post_body_sent_as_json(self, settings, clock):
        client, recorder = make_client(settings, clock, lambda r: json_response([]))

        await client.fetch("/universe/names/", method="POST", body=[1, 2], requires_auth=False)

        request = recorder.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content) == [1, 2]

    def test_rate_limit_info_idle(self, settings, clock):
        client = ESIClient(settings, clock=clock, http_client=httpx.AsyncClient())

        assert client.get_rate_limit_info() == {"is_limited": False, "retry_after": None, "queue_length": 0}


class TestParseExpires:
    """Tests for the Expires header parser."""

    def test_valid_date(self):
        assert parse_expires("Thu, 01 Jan 2026 00:00:00 GMT") == 1767225600.0

    def test_invalid_date(self):
        assert parse_expires("not a date") is None
        assert parse_expires(None) is None

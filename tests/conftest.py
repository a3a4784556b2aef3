"""
ESI Client Test Configuration
-----------------------------
Shared fixtures for all tests.

- FakeClock: sleep() advances virtual time instantly and records durations
- MockTransport helpers: route httpx requests to in-test handlers
"""

import asyncio
import sys
from email.utils import format_datetime
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List

import httpx
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.clock import Clock
from infra.config import ClientSettings

START_TIME = 1_700_000_000.0


class FakeClock(Clock):
    """Virtual clock; sleeping moves time forward without waiting."""

    def __init__(self, start: float = START_TIME):
        self.now = start
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.now += seconds


def http_date(epoch: float) -> str:
    """Epoch seconds as an HTTP-date header value."""
    return format_datetime(datetime.fromtimestamp(epoch, tz=timezone.utc), usegmt=True)


class Recorder:
    """MockTransport handler wrapper that keeps every request it saw."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def count(self) -> int:
        return len(self.requests)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return ClientSettings(
        esi_base_url="https://esi.test",
        ref_base_url="https://ref.test/api/v1",
        type_coalesce_delay=0.05,
        location_coalesce_delay=0.05,
    )

"""
Credential Resolver
-------------------
Interface the scheduler consumes to obtain bearer tokens.

A resolver returns a valid access token for an identity, or None when
none can be produced right now. It may refresh over the network first.
It raises CredentialRevoked when the identity is permanently unusable
and CredentialUnavailable on a transient refresh failure.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Protocol, runtime_checkable
import time

from infra.logging import get_logger

from .errors import CredentialRevoked, CredentialUnavailable
from .singleflight import SingleFlight


@runtime_checkable
class CredentialResolver(Protocol):
    """Anything with an async get_token(identity)."""

    async def get_token(self, character_id: Optional[int]) -> Optional[str]:
        ...


@dataclass
class StoredToken:
    """Token material held by StaticCredentialResolver."""
    access_token: str
    expires_at: float
    refresh_token: Optional[str] = None


Refresher = Callable[[int, str], Awaitable[StoredToken]]


@dataclass
class StaticCredentialResolver:
    """
    Credential resolver over an in-memory token table.

    Tokens within `refresh_margin` seconds of expiry are refreshed through
    the optional `refresher` coroutine. Concurrent callers for one identity
    share a single refresh, so a rotating refresh token is spent once.
    Identities that fail with CredentialRevoked are remembered and
    rejected from then on.
    """
    tokens: Dict[int, StoredToken] = field(default_factory=dict)
    refresher: Optional[Refresher] = None
    clock: Optional[Callable[[], float]] = None
    refresh_margin: float = 60.0
    _revoked: set = field(default_factory=set, repr=False)
    _refreshes: SingleFlight = field(default_factory=SingleFlight, repr=False)

    def __post_init__(self):
        self._logger = get_logger("credentials")

    def _now(self) -> float:
        if self.clock is not None:
            return self.clock()
        return time.time()

    def set_token(self, character_id: int, token: StoredToken) -> None:
        self.tokens[character_id] = token
        self._revoked.discard(character_id)

    def is_revoked(self, character_id: int) -> bool:
        return character_id in self._revoked

    async def get_token(self, character_id: Optional[int]) -> Optional[str]:
        if character_id is None:
            return None
        if character_id in self._revoked:
            raise CredentialRevoked(f"Identity {character_id} requires re-authentication")

        stored = self.tokens.get(character_id)
        if stored is None:
            return None

        if stored.expires_at - self.refresh_margin > self._now():
            return stored.access_token

        if self.refresher is None or not stored.refresh_token:
            return None

        return await self._refreshes.run(character_id, lambda: self._refresh(character_id, stored))

    async def _refresh(self, character_id: int, stored: StoredToken) -> str:
        try:
            refreshed = await self.refresher(character_id, stored.refresh_token)
        except CredentialRevoked:
            self._revoked.add(character_id)
            self._logger.warning(f"Credential revoked for {character_id}")
            raise
        except CredentialUnavailable:
            self._logger.warning(f"Token refresh failed for {character_id}, will retry later")
            raise

        self.tokens[character_id] = refreshed
        return refreshed.access_token

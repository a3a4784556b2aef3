"""
ESI Health
----------
Provider status from /meta/status.

Design:
- Passive: reports status, never blocks or raises
- Cached for health_cache_ttl; concurrent refreshes share one request
- Per-base-path worst status (e.g. /characters/) for ensure_healthy()
- A failed check reuses a recent good result, otherwise reports unknown
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from core.clock import Clock
from core.singleflight import SingleFlight
from infra.config import ClientSettings
from infra.logging import get_logger

# A failed refresh may fall back to a cached status this many TTLs old.
STALE_FALLBACK_FACTOR = 5


class RouteStatus(Enum):
    OK = "OK"
    RECOVERING = "Recovering"
    DEGRADED = "Degraded"
    UNKNOWN = "Unknown"
    DOWN = "Down"

    @classmethod
    def parse(cls, value: Any) -> "RouteStatus":
        for status in cls:
            if status.value == value:
                return status
        return cls.UNKNOWN


# Worst wins when folding routes into a base path.
_SEVERITY = {
    RouteStatus.OK: 0,
    RouteStatus.RECOVERING: 1,
    RouteStatus.DEGRADED: 2,
    RouteStatus.UNKNOWN: 3,
    RouteStatus.DOWN: 4,
}


class OverallStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"
    UNKNOWN = "unknown"


@dataclass
class RouteHealth:
    method: str
    path: str
    status: RouteStatus


@dataclass
class HealthStatus:
    healthy: bool
    status: OverallStatus
    routes: List[RouteHealth] = field(default_factory=list)
    fetched_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "status": self.status.value,
            "routes": len(self.routes),
            "fetched_at": self.fetched_at,
        }


@dataclass
class HealthVerdict:
    healthy: bool
    error: Optional[str] = None


def extract_base(endpoint: str) -> str:
    """First path segment as '/segment/', or '/'."""
    path = endpoint.split("?", 1)[0]
    segments = [s for s in path.split("/") if s]
    return f"/{segments[0]}/" if segments else "/"


def overall_status(routes: List[RouteHealth]) -> OverallStatus:
    if not routes:
        return OverallStatus.UNKNOWN

    down = sum(1 for r in routes if r.status == RouteStatus.DOWN)
    degraded = sum(1 for r in routes if r.status == RouteStatus.DEGRADED)
    unknown = sum(1 for r in routes if r.status == RouteStatus.UNKNOWN)

    if down / len(routes) > 0.5:
        return OverallStatus.DOWN
    if down or degraded:
        return OverallStatus.DEGRADED
    if unknown > len(routes) * 0.5:
        return OverallStatus.UNKNOWN
    return OverallStatus.HEALTHY


class ESIHealthChecker:
    """Cached, deduplicated reader of the provider's route status."""

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or ClientSettings()
        self.clock = clock or Clock()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.settings.health_request_timeout)
        self._flight: SingleFlight[HealthStatus] = SingleFlight()
        self._cache: Optional[HealthStatus] = None
        self._base_health: Dict[str, RouteStatus] = {}
        self._logger = get_logger("api.health")

    @property
    def cached_status(self) -> Optional[HealthStatus]:
        return self._cache

    async def get_health_status(self) -> HealthStatus:
        if self._cache is not None and self._age(self._cache) < self.settings.health_cache_ttl:
            return self._cache
        return await self._flight.run("status", self._fetch_status)

    async def ensure_healthy(self, endpoint: str) -> HealthVerdict:
        """Whether calls to endpoint are worth attempting right now."""
        status = await self.get_health_status()
        if status.status == OverallStatus.DOWN:
            return HealthVerdict(False, "ESI service unavailable")

        base = extract_base(endpoint)
        base_status = self._base_health.get(base)
        if base_status in (RouteStatus.DOWN, RouteStatus.UNKNOWN):
            return HealthVerdict(False, f"ESI {base} endpoints are {base_status.value.lower()}")

        return HealthVerdict(True)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _age(self, status: HealthStatus) -> float:
        return self.clock.time() - status.fetched_at

    async def _fetch_status(self) -> HealthStatus:
        url = f"{self.settings.esi_base_url.rstrip('/')}/meta/status"
        headers = {
            "X-Compatibility-Date": self.settings.compatibility_date,
            "User-Agent": self.settings.user_agent,
            "Accept": "application/json",
        }

        try:
            response = await self._http.get(url, headers=headers)
        except httpx.TimeoutException:
            self._logger.warning("ESI health check error: Health check timeout")
            return self._unknown_status()
        except httpx.HTTPError as e:
            self._logger.warning(f"ESI health check error: {e}")
            return self._unknown_status()

        if not response.is_success:
            self._logger.warning(f"ESI health check failed: HTTP {response.status_code}")
            return self._unknown_status()

        try:
            data = response.json()
        except ValueError:
            data = None
        raw_routes = data.get("routes") if isinstance(data, dict) else None
        if not isinstance(raw_routes, list):
            self._logger.warning("ESI health check returned invalid data")
            return self._unknown_status()

        routes = [
            RouteHealth(
                method=str(r.get("method", "")),
                path=str(r.get("path", "")),
                status=RouteStatus.parse(r.get("status")),
            )
            for r in raw_routes
            if isinstance(r, dict)
        ]
        self._base_health = self._build_base_health(routes)

        overall = overall_status(routes)
        self._cache = HealthStatus(
            healthy=overall in (OverallStatus.HEALTHY, OverallStatus.DEGRADED),
            status=overall,
            routes=routes,
            fetched_at=self.clock.time(),
        )

        if overall == OverallStatus.DOWN:
            self._logger.warning("ESI is down")
        elif overall == OverallStatus.DEGRADED:
            self._logger.info("ESI is degraded")

        return self._cache

    def _build_base_health(self, routes: List[RouteHealth]) -> Dict[str, RouteStatus]:
        worst: Dict[str, RouteStatus] = {}
        for route in routes:
            base = extract_base(route.path)
            current = worst.get(base)
            if current is None or _SEVERITY[route.status] > _SEVERITY[current]:
                worst[base] = route.status
        return worst

    def _unknown_status(self) -> HealthStatus:
        if (
            self._cache is not None
            and self._age(self._cache) < self.settings.health_cache_ttl * STALE_FALLBACK_FACTOR
        ):
            return self._cache
        return HealthStatus(
            healthy=True,
            status=OverallStatus.UNKNOWN,
            fetched_at=self.clock.time(),
        )

"""
Rate Limit Tracker
------------------
Quota bookkeeping per rate-limit group and the global backoff deadline.

Group quota state is advisory: it is refreshed from every response and
feeds warnings and telemetry, never gating by itself. The global backoff
deadline is the only thing that holds requests back. It is set by a
429/420 response and cleared lazily once it has passed.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional, Tuple
import re

from core.clock import Clock
from infra.logging import get_logger

DEFAULT_GROUP_LIMIT = 150
DEFAULT_WINDOW_SECONDS = 15 * 60
ERROR_LIMIT_WINDOW_SECONDS = 60

_LIMIT_PATTERN = re.compile(r"(\d+)(?:/(\d+)([smh]))?")
_WINDOW_UNITS = {"s": 1, "m": 60, "h": 3600}

# (path fragment that must appear, owner segment, group) in match order
_GROUP_RULES = (
    ("/assets", "/characters/", "char-asset"),
    ("/assets", "/corporations/", "corp-asset"),
    ("/wallet", "/characters/", "char-wallet"),
    ("/wallet", "/corporations/", "corp-wallet"),
    ("/industry", "/characters/", "char-industry"),
    ("/industry", "/corporations/", "corp-industry"),
    ("/contracts", "/characters/", "char-contract"),
    ("/contracts", "/corporations/", "corp-contract"),
    ("/clones", "/characters/", "char-location"),
    ("/implants", "/characters/", "char-detail"),
    ("/blueprints", "/characters/", "char-industry"),
    ("/blueprints", "/corporations/", "corp-industry"),
    ("/starbases", "/corporations/", "corp-structure"),
    ("/structures", "/corporations/", "corp-structure"),
)


def guess_rate_limit_group(endpoint: str) -> str:
    """Infer the rate-limit group of an endpoint when the response doesn't name it."""
    for fragment, owner, group in _GROUP_RULES:
        if owner in endpoint and fragment in endpoint:
            return group
    if "/markets/" in endpoint:
        return "market"
    if "/universe/" in endpoint:
        return "universe"
    return "default"


def parse_retry_after(value: Optional[str], default: float) -> float:
    """Retry-After in seconds; absent, malformed or negative values fall back to default."""
    if value is None:
        return default
    try:
        seconds = float(value.strip())
    except (AttributeError, ValueError):
        return default
    if seconds < 0 or seconds != seconds:
        return default
    return seconds


def parse_limit(value: Optional[str]) -> Tuple[int, float]:
    """Parse `150/15m` style limit headers into (limit, window seconds)."""
    if not value:
        return DEFAULT_GROUP_LIMIT, DEFAULT_WINDOW_SECONDS
    match = _LIMIT_PATTERN.search(value)
    if not match:
        return DEFAULT_GROUP_LIMIT, DEFAULT_WINDOW_SECONDS
    limit = int(match.group(1))
    if match.group(2) and match.group(3):
        window = int(match.group(2)) * _WINDOW_UNITS[match.group(3)]
    else:
        window = DEFAULT_WINDOW_SECONDS
    return limit, float(window)


@dataclass
class RateLimitState:
    """Last observed quota for one (identity, group)."""
    remaining: int
    limit: int
    window_seconds: float = DEFAULT_WINDOW_SECONDS
    used: int = 0
    last_updated: float = 0.0
    window_start: float = 0.0


@dataclass
class ErrorLimitState:
    """Last observed error budget for one group."""
    remain: int
    reset_at: float


class RateLimitTracker:
    """
    Per-group quota tracking and the process-wide backoff deadline.

    One instance is shared by every caller of a ServiceContext: a 429
    triggered by one caller delays all others.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        warn_remaining: int = 20,
        error_warn_remaining: int = 50,
    ):
        self._clock = clock or Clock()
        self.warn_remaining = warn_remaining
        self.error_warn_remaining = error_warn_remaining
        self._groups: Dict[Tuple[int, str], RateLimitState] = {}
        self._error_limits: Dict[str, ErrorLimitState] = {}
        self._backoff_deadline: Optional[float] = None
        self._logger = get_logger("api.rate_limit")

    # --- quota headers ---------------------------------------------------

    def update_from_headers(
        self,
        headers: Mapping[str, str],
        endpoint: str = "",
        character_id: Optional[int] = None,
    ) -> Optional[Tuple[str, RateLimitState]]:
        """Refresh group state from a response. Returns None without quota headers."""
        group = headers.get("X-Ratelimit-Group") or guess_rate_limit_group(endpoint)
        now = self._clock.time()

        self._update_error_limit(group, headers, now)

        remaining_header = headers.get("X-Ratelimit-Remaining")
        if remaining_header is None:
            return None
        try:
            remaining = int(remaining_header)
        except ValueError:
            self._logger.debug(f"Ignoring malformed X-Ratelimit-Remaining: {remaining_header!r}")
            return None

        limit, window = parse_limit(headers.get("X-Ratelimit-Limit"))
        used_header = headers.get("X-Ratelimit-Used")
        key = (character_id or 0, group)
        existing = self._groups.get(key)

        state = RateLimitState(
            remaining=remaining,
            limit=limit,
            window_seconds=window,
            used=int(used_header) if used_header and used_header.isdigit() else 0,
            last_updated=now,
            window_start=existing.window_start if existing else now,
        )
        # Quota went back up: a new window started
        if existing is None or remaining > existing.remaining:
            state.window_start = now

        self._groups[key] = state

        if remaining < self.warn_remaining:
            self._logger.warning(
                f"ESI rate limit low for {group}: {remaining}/{limit}",
                extra={"group": group, "remaining": remaining},
            )

        return group, state

    def _update_error_limit(self, group: str, headers: Mapping[str, str], now: float) -> None:
        remain_header = headers.get("X-ESI-Error-Limit-Remain")
        if remain_header is None:
            return
        try:
            remain = int(remain_header)
        except ValueError:
            return

        reset_header = headers.get("X-ESI-Error-Limit-Reset")
        reset_in = ERROR_LIMIT_WINDOW_SECONDS
        if reset_header and reset_header.isdigit():
            reset_in = int(reset_header)

        existing = self._error_limits.get(group)
        crossed = existing is None or existing.remain > self.error_warn_remaining
        if remain <= self.error_warn_remaining and crossed:
            self._logger.warning(
                f"ESI error limit getting low for {group}: {remain}",
                extra={"group": group, "remaining": remain},
            )

        self._error_limits[group] = ErrorLimitState(remain=remain, reset_at=now + reset_in)

    def get_state(self, group: str, character_id: Optional[int] = None) -> Optional[RateLimitState]:
        return self._groups.get((character_id or 0, group))

    def get_error_limit(self, group: str) -> Optional[ErrorLimitState]:
        state = self._error_limits.get(group)
        if state is not None and self._clock.time() >= state.reset_at:
            del self._error_limits[group]
            return None
        return state

    # --- global backoff --------------------------------------------------

    def set_global_retry_after(self, seconds: float) -> float:
        """Push the backoff deadline to at least now + seconds. Returns the deadline."""
        deadline = self._clock.time() + seconds
        if self._backoff_deadline is None or deadline > self._backoff_deadline:
            self._backoff_deadline = deadline
        return self._backoff_deadline

    def remaining_backoff(self) -> float:
        """Seconds until the deadline, clearing it once passed."""
        if self._backoff_deadline is None:
            return 0.0
        remaining = self._backoff_deadline - self._clock.time()
        if remaining <= 0:
            self._backoff_deadline = None
            return 0.0
        return remaining

    @property
    def backoff_deadline(self) -> Optional[float]:
        return self._backoff_deadline

    def is_globally_limited(self) -> bool:
        return self.remaining_backoff() > 0

    async def wait_for_backoff(self) -> float:
        """Suspend until no backoff is active. Returns total seconds waited."""
        waited = 0.0
        # Loop: another response may extend the deadline while we sleep
        while True:
            remaining = self.remaining_backoff()
            if remaining <= 0:
                return waited
            self._logger.debug(f"Waiting {remaining:.2f}s for global backoff")
            await self._clock.sleep(remaining)
            waited += remaining

    # --- snapshots -------------------------------------------------------

    def export_states(self) -> Dict[str, Dict[str, Any]]:
        return {f"{cid}:{group}": asdict(state) for (cid, group), state in self._groups.items()}

    def load_states(self, states: Mapping[str, Mapping[str, Any]]) -> int:
        """Restore snapshots whose window is still open. Returns how many were kept."""
        now = self._clock.time()
        loaded = 0
        for key, raw in states.items():
            cid, _, group = key.partition(":")
            try:
                state = RateLimitState(**raw)
                owner = int(cid)
            except (TypeError, ValueError):
                self._logger.debug(f"Skipping malformed rate limit snapshot {key!r}")
                continue
            if now - state.window_start < state.window_seconds:
                self._groups[(owner, group)] = state
                loaded += 1
        return loaded

    def reset(self) -> None:
        self._groups.clear()
        self._error_limits.clear()
        self._backoff_deadline = None

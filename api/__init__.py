# API module - Provider API request scheduler
# One queue, one cache, one backoff deadline per ServiceContext

from .cache import ResponseCache, CacheEntry, make_key
from .rate_limiter import RateLimitTracker, RateLimitState
from .queue import RequestQueue, QueueCleared
from .client import ESIClient
from .pagination import fetch_paginated, fetch_paginated_with_meta
from .health import ESIHealthChecker, HealthStatus, OverallStatus
from .types import RequestOptions, ESIResult, ResponseMeta

__all__ = [
    "ESIClient",
    "RequestOptions",
    "ESIResult",
    "ResponseMeta",
    "ResponseCache",
    "CacheEntry",
    "make_key",
    "RateLimitTracker",
    "RateLimitState",
    "RequestQueue",
    "QueueCleared",
    "fetch_paginated",
    "fetch_paginated_with_meta",
    "ESIHealthChecker",
    "HealthStatus",
    "OverallStatus",
]

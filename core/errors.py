"""
Error Taxonomy
--------------
Typed errors raised by the request layer.

Rules:
- The scheduler never retries; every failure surfaces as one of these
- Rate limits and authentication failures stay distinguishable from
  generic fetch errors so the UI can present them differently
"""

from enum import Enum, auto
from typing import List, Optional


class ErrorCategory(Enum):
    """Categories of errors for handling decisions."""
    AUTH = auto()          # No usable credential
    RATE_LIMIT = auto()    # Global backoff engaged
    HTTP = auto()          # Non-2xx, non-rate-limit response
    VALIDATION = auto()    # Response shape mismatch
    NETWORK = auto()       # Transport failure


class ESIError(Exception):
    """Base class for every request-layer failure."""

    category: ErrorCategory = ErrorCategory.HTTP

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.retry_after = retry_after

    @property
    def is_retryable(self) -> bool:
        """Whether a caller may reasonably try the same call again later."""
        return self.category in {ErrorCategory.RATE_LIMIT, ErrorCategory.NETWORK}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.status}: {self.message})"


class NotAuthenticated(ESIError):
    """
    No bearer token could be obtained for the identity.

    permanent=True means the credential store marked the identity unusable
    (re-login required); False means the token may become available later.
    """

    category = ErrorCategory.AUTH

    def __init__(
        self,
        message: str = "Not authenticated",
        character_id: Optional[int] = None,
        permanent: bool = False
    ):
        super().__init__(message, status=401)
        self.character_id = character_id
        self.permanent = permanent

    @property
    def is_retryable(self) -> bool:
        return not self.permanent


class RateLimited(ESIError):
    """A 429/420 response; the global backoff deadline has been set."""

    category = ErrorCategory.RATE_LIMIT

    def __init__(self, status: int, retry_after: float):
        super().__init__(
            f"Rate limited. Retry after {retry_after:g} seconds",
            status=status,
            retry_after=retry_after,
        )


class RequestFailed(ESIError):
    """Any other non-2xx response."""

    category = ErrorCategory.HTTP

    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(message or f"ESI request failed: {status}", status=status)


class ValidationFailed(ESIError):
    """The response body did not match the expected shape."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, issues: Optional[List[str]] = None):
        super().__init__(message)
        self.issues = issues or []


class TransportError(ESIError):
    """The HTTP transport failed before a response arrived."""

    category = ErrorCategory.NETWORK


class CredentialRevoked(Exception):
    """Raised by a credential resolver when the identity can no longer be used."""


class CredentialUnavailable(Exception):
    """Raised by a credential resolver on a transient refresh failure."""


USER_MESSAGES = {
    ErrorCategory.AUTH: "Authentication required. Please log in again.",
    ErrorCategory.RATE_LIMIT: "The game API is rate limiting requests. Please wait.",
    ErrorCategory.HTTP: "The game API returned an error.",
    ErrorCategory.VALIDATION: "The game API returned unexpected data.",
    ErrorCategory.NETWORK: "Unable to reach the game API. Please check your connection.",
}


def user_message(error: ESIError) -> str:
    """Short user-facing text for an error."""
    if isinstance(error, RateLimited) and error.retry_after:
        return f"Rate limited by the game API. Retrying is possible in {error.retry_after:g}s."
    if isinstance(error, NotAuthenticated) and not error.permanent:
        return "Could not refresh the login. Please try again shortly."
    return USER_MESSAGES.get(error.category, "An error occurred.")

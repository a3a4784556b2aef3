# Core module - Errors, credentials, store and scheduling primitives
# ServiceContext lives in core.context and is imported from there
# (it depends on api/ and refdata/, which depend on this package)

from .errors import (
    ESIError, ErrorCategory, NotAuthenticated, RateLimited, RequestFailed,
    ValidationFailed, TransportError, CredentialRevoked, CredentialUnavailable,
    user_message,
)
from .clock import Clock
from .credentials import CredentialResolver, StaticCredentialResolver, StoredToken
from .store import EntityStore, InMemoryEntityStore
from .singleflight import SingleFlight

__all__ = [
    # Errors
    "ESIError",
    "ErrorCategory",
    "NotAuthenticated",
    "RateLimited",
    "RequestFailed",
    "ValidationFailed",
    "TransportError",
    "CredentialRevoked",
    "CredentialUnavailable",
    "user_message",
    # Primitives
    "Clock",
    "SingleFlight",
    # Collaborators
    "CredentialResolver",
    "StaticCredentialResolver",
    "StoredToken",
    "EntityStore",
    "InMemoryEntityStore",
]

"""
Typed errors raised by the knowledge base core.

The presentation layer turns these into user-facing text; the core never
does.  ``retryable`` marks the errors the service's retry loop may retry.
"""

from __future__ import annotations

from typing import Optional


class KBError(Exception):
    """Base class for every error raised by :mod:`snippet_kb`."""

    retryable: bool = False


class AuthError(KBError):
    """No credential is available, or the embedding service rejected it."""


class RateLimited(KBError):
    """The embedding service throttled the request (HTTP 429)."""

    retryable = True

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class NetworkError(KBError):
    """Transport failure or timeout while talking to a remote service."""

    retryable = True


class ServiceError(KBError):
    """The remote service failed.

    ``transient`` errors (5xx, overloaded) are retried; permanent ones
    (bad request, malformed payload) surface immediately.
    """

    def __init__(self, message: str, transient: bool = False,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient


class StorageFull(KBError):
    """The storage medium rejected a write because it is full."""


class InvalidFormat(KBError):
    """A credential failed format validation."""


class CorruptionError(KBError):
    """Vault data failed its authentication check and cannot be recovered."""


class DimensionMismatchError(KBError):
    """An embedding does not have the store's fixed dimensionality."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"embedding has {actual} dimensions, store expects {expected}"
        )
        self.expected = expected
        self.actual = actual


class UnknownBackendError(KBError):
    """The configured embedding backend tag is not a known backend kind."""

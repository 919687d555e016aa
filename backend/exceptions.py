"""Application-level exception types.

Convention:
- ``SyncError`` subclasses describe why a synchronization step with the remote
  store failed.  Transfer and reconciliation functions raise the specific kind;
  the background scheduler converts them into backoff decisions, and the API
  exception handlers in ``backend/main.py`` map them to HTTP status codes.
- ``OSError`` (not wrapped) signals local file read/write failures.
- ``InternalServerError`` — for errors whose details must never reach clients
  (credential decryption failures, etc.).  The global handler logs the full
  message at ERROR and returns a generic "Internal server error" (500).
- ``ValueError`` — for validation errors that are safe to forward to clients.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients."""


class SyncError(Exception):
    """Base class for remote synchronization failures."""


class Unauthenticated(SyncError):
    """No stored credentials, or credentials that can no longer be refreshed."""


class RefreshFailed(SyncError):
    """Refreshing an expiring access token failed."""


class NetworkError(SyncError):
    """Transient transport failure talking to the remote store.

    Never retried by the caller synchronously; the scheduler backs off instead.
    """


class RateLimitedError(NetworkError):
    """The remote store answered HTTP 429."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RemoteRejected(SyncError):
    """The remote store answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncConflictError(SyncError):
    """Local and remote copies both changed since the last sync."""

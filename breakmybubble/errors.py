"""
Error taxonomy for outbound NewsAPI requests and the cache layer.

Every request error carries a ``kind`` and an optional HTTP ``status_code`` so
callers can pick user-facing copy without parsing messages.
"""
from typing import Any, Dict, Optional


class RequestError(Exception):
    """Base class for errors surfaced by the request governor and API client."""

    def __init__(
        self,
        message: str,
        kind: str = "request_failed",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "status_code": self.status_code,
            "message": self.message,
        }


class TransientAPIError(RequestError):
    """Retryable failure (429/5xx gateway errors, dropped connections)."""

    def __init__(
        self,
        message: str,
        kind: str = "retryable_error",
        status_code: Optional[int] = None,
    ):
        super().__init__(message, kind, status_code)


class RequestTimeoutError(TransientAPIError):
    """The call exceeded its timeout and was abandoned."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, "timeout", status_code)


class FatalAPIError(RequestError):
    """Non-retryable failure such as a bad credential or malformed request."""


class QueueClearedError(RequestError):
    """Raised to callers whose call was still queued when the queue was cleared."""

    def __init__(self, message: str = "Request queue cleared"):
        super().__init__(message, "queue_cleared")


class PersistenceError(Exception):
    """A key-value backend failed to read or write."""


class RefreshNotInitializedError(RuntimeError):
    """force_refresh() was called before a refresh callback was wired."""

"""Error taxonomy for marketplace access and sync runs."""

from typing import Optional


class CatalogSyncError(RuntimeError):
    """Base class for sync failures."""

    retryable: bool = False


class TransientUpstreamError(CatalogSyncError):
    """Raised when the API keeps failing with 5xx or transport errors."""

    retryable = True


class RateLimitedError(CatalogSyncError):
    """Raised when the API answers 429."""

    retryable = True

    def __init__(self, retry_after: Optional[float] = None):
        super().__init__("Rate limited by marketplace API")
        self.retry_after = retry_after


class GatewayQueueTimeout(CatalogSyncError):
    """Raised when a caller waited too long for a rate window slot."""

    retryable = True


class CursorExpiredError(CatalogSyncError):
    """Raised when the API rejects a scroll cursor."""


class AuthExpiredError(CatalogSyncError):
    """Raised when the seller must re-authenticate.

    Never treat this as an empty result: callers must stop before writing.
    """

    retryable = True
    needs_auth = True


class ItemNotFoundError(CatalogSyncError):
    """Raised when a single item lookup returns 404."""


class UpstreamRequestError(CatalogSyncError):
    """Raised for 4xx answers that retrying will not fix."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ScanInProgressError(CatalogSyncError):
    """Raised when another invocation holds the user's scan lock."""

    retryable = True

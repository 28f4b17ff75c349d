"""Exception hierarchy for pyb2backup."""

from typing import Optional


class B2BackupError(Exception):
    """Base exception for all pyb2backup errors."""


class B2ConfigError(B2BackupError):
    """Raised when credentials or the bucket are not configured."""


# =============================================================================
# Storage API errors
# =============================================================================


class B2APIError(B2BackupError):
    """Raised when a B2 API call fails."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class B2AuthenticationError(B2APIError):
    """Credentials were rejected. Retrying cannot succeed."""


class B2QuotaError(B2APIError):
    """A storage, download or transaction cap was exceeded."""


class B2InvalidResponseError(B2APIError):
    """The server answered with something that is not valid B2 JSON."""


class B2TransportError(B2APIError):
    """Transient failure; the request may succeed if retried."""


class B2NetworkError(B2TransportError):
    """Connection failure or request timeout."""


class B2RateLimitError(B2TransportError):
    """HTTP 429 / 503 with a Retry-After hint."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, code=code)
        self.retry_after = retry_after


class B2ServerError(B2TransportError):
    """HTTP 5xx or 408 from the server."""


# =============================================================================
# Engine errors
# =============================================================================


class ScanError(B2BackupError):
    """A local filesystem entry could not be read."""

    def __init__(self, path: str, cause: Exception):
        super().__init__(f"Cannot read {path}: {cause}")
        self.path = path
        self.cause = cause


class ListError(B2BackupError):
    """The remote snapshot could not be fetched."""


class OperationError(B2BackupError):
    """A single upload or hide operation failed for good."""

    def __init__(self, key: str, cause: Exception, attempts: int = 1):
        super().__init__(f"{key}: {cause}")
        self.key = key
        self.cause = cause
        self.attempts = attempts


class UploadError(OperationError):
    """Upload failed after retries or with a fatal cause."""


class HideError(OperationError):
    """Hide (soft delete) failed after retries or with a fatal cause."""


class AlreadyRunningError(B2BackupError):
    """A run is already active."""


class NodeNotFoundError(B2BackupError):
    """No node exists at the given tree path."""

    def __init__(self, path: str):
        super().__init__(f"No such entry in tree: {path}")
        self.path = path

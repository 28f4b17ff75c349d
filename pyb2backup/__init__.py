"""B2 Backup - one-way backup of a local directory to Backblaze B2."""

from .api import B2Client
from .exceptions import (
    AlreadyRunningError,
    B2APIError,
    B2AuthenticationError,
    B2BackupError,
    B2ConfigError,
    B2InvalidResponseError,
    B2NetworkError,
    B2QuotaError,
    B2RateLimitError,
    B2ServerError,
    B2TransportError,
    HideError,
    ListError,
    NodeNotFoundError,
    ScanError,
    UploadError,
)
from .utils import calculate_sha1

__version__ = "0.1.0"

__all__ = [
    "B2Client",
    "AlreadyRunningError",
    "B2APIError",
    "B2AuthenticationError",
    "B2BackupError",
    "B2ConfigError",
    "B2InvalidResponseError",
    "B2NetworkError",
    "B2QuotaError",
    "B2RateLimitError",
    "B2ServerError",
    "B2TransportError",
    "HideError",
    "ListError",
    "NodeNotFoundError",
    "ScanError",
    "UploadError",
    "calculate_sha1",
]

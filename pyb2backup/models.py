"""Data models for B2 API responses."""

from dataclasses import dataclass, field
from typing import Any, Optional

from .exceptions import B2InvalidResponseError


@dataclass
class B2FileVersion:
    """A single file version as returned by the B2 API."""

    file_name: str
    """Full object name inside the bucket"""

    file_id: Optional[str] = None
    """Version identifier"""

    content_length: int = 0
    """Size in bytes"""

    content_sha1: Optional[str] = None
    """SHA-1 hex digest, None for large files and hide markers"""

    upload_timestamp: int = 0
    """Upload time in milliseconds since the epoch"""

    action: str = "upload"
    """B2 action: upload, hide, start or folder"""

    file_info: dict[str, str] = field(default_factory=dict)
    """Custom file info (e.g. src_last_modified_millis)"""

    @property
    def is_current_upload(self) -> bool:
        """True for a visible, finished upload."""
        return self.action == "upload"

    @property
    def src_last_modified_millis(self) -> Optional[int]:
        """Local mtime recorded at upload time, if present."""
        value = self.file_info.get("src_last_modified_millis")
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "B2FileVersion":
        """Create a B2FileVersion from a B2 file JSON object.

        Args:
            data: Dictionary from b2_list_file_names, b2_upload_file or
                b2_hide_file

        Returns:
            B2FileVersion instance

        Raises:
            B2InvalidResponseError: If fileName is missing
        """
        if not isinstance(data, dict) or "fileName" not in data:
            raise B2InvalidResponseError(f"Malformed file object: {data!r}")

        sha1 = data.get("contentSha1")
        # B2 reports "none" for large files
        if sha1 in ("none", ""):
            sha1 = None
        elif sha1 and sha1.startswith("unverified:"):
            sha1 = sha1[len("unverified:") :]

        return cls(
            file_name=data["fileName"],
            file_id=data.get("fileId"),
            content_length=int(data.get("contentLength") or 0),
            content_sha1=sha1,
            upload_timestamp=int(data.get("uploadTimestamp") or 0),
            action=data.get("action", "upload"),
            file_info=dict(data.get("fileInfo") or {}),
        )


@dataclass
class B2Authorization:
    """Result of b2_authorize_account."""

    account_id: str
    authorization_token: str
    api_url: str
    download_url: str = ""
    allowed_bucket_id: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "B2Authorization":
        """Parse the b2_authorize_account response (v2 layout)."""
        try:
            allowed = data.get("allowed") or {}
            return cls(
                account_id=data["accountId"],
                authorization_token=data["authorizationToken"],
                api_url=data["apiUrl"],
                download_url=data.get("downloadUrl", ""),
                allowed_bucket_id=allowed.get("bucketId"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise B2InvalidResponseError(
                f"Malformed authorization response: missing {e}"
            ) from e


@dataclass
class B2UploadUrl:
    """Upload URL and its dedicated token from b2_get_upload_url."""

    upload_url: str
    authorization_token: str

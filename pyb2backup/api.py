"""API client for Backblaze B2 (native API v2)."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, BinaryIO, Callable, Iterator

import httpx

from .config import config
from .exceptions import (
    B2APIError,
    B2AuthenticationError,
    B2ConfigError,
    B2InvalidResponseError,
    B2NetworkError,
    B2QuotaError,
    B2RateLimitError,
    B2ServerError,
    B2TransportError,
)
from .models import B2Authorization, B2FileVersion, B2UploadUrl
from .utils import (
    DEFAULT_PAGE_SIZE,
    DEFAULT_TIMEOUT,
    calculate_retry_delay,
    encode_file_name,
    iter_file_chunks,
)

logger = logging.getLogger(__name__)

API_PREFIX = "b2api/v2"

EXPIRED_TOKEN_CODES = frozenset({"expired_auth_token", "bad_auth_token"})
QUOTA_CODES = frozenset(
    {
        "cap_exceeded",
        "storage_cap_exceeded",
        "transaction_cap_exceeded",
        "download_cap_exceeded",
    }
)


class B2Client:
    """Client for the parts of the B2 API a backup needs.

    Implements :class:`pyb2backup.protocols.StorageClientProtocol`.
    Authorization happens lazily on the first call and is refreshed once
    if the token expires. The client is safe to share between threads.
    """

    def __init__(
        self,
        key_id: str | None = None,
        application_key: str | None = None,
        api_url: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """Initialize B2 API client.

        Args:
            key_id: Application key ID (uses config if not provided)
            application_key: Application key (uses config if not provided)
            api_url: Authorization base URL (uses config if not provided)
            max_retries: Retry attempts for metadata calls (default: 3)
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Per-request timeout in seconds
        """
        self.key_id = key_id or config.key_id
        self.application_key = application_key or config.application_key
        self.api_url = (api_url or config.api_url).rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout

        if not self.key_id or not self.application_key:
            raise B2ConfigError(
                "Application key not configured. Please set "
                "B2_APPLICATION_KEY_ID and B2_APPLICATION_KEY environment variables."
            )

        self._client: httpx.Client | None = None
        self._authorization: B2Authorization | None = None
        self._auth_lock = threading.Lock()
        self._upload_urls: dict[str, list[B2UploadUrl]] = {}
        self._upload_urls_lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None
        with self._upload_urls_lock:
            self._upload_urls.clear()

    # =========================
    # Error handling
    # =========================

    def _error_from_response(self, response: httpx.Response) -> B2APIError:
        """Map a failed HTTP response to the matching exception.

        Args:
            response: Response with a non-2xx status

        Returns:
            Exception instance (not raised)
        """
        status_code = response.status_code
        code = None
        message = f"API request failed with status {status_code}"

        # B2 errors look like {"status": 400, "code": "...", "message": "..."}
        try:
            if response.content:
                error_data = response.json()
                if isinstance(error_data, dict):
                    code = error_data.get("code")
                    detail = error_data.get("message")
                    if detail:
                        message = f"{message}: {detail}"
        except ValueError:
            # Not JSON, keep the status-based message
            pass

        if status_code == 401:
            return B2AuthenticationError(
                f"Invalid or expired credentials ({code or 'unauthorized'})",
                status_code=status_code,
                code=code,
            )
        if status_code == 403:
            if code in QUOTA_CODES:
                return B2QuotaError(message, status_code=status_code, code=code)
            return B2AuthenticationError(
                f"Access denied - check key capabilities ({code or 'forbidden'})",
                status_code=status_code,
                code=code,
            )
        if status_code in (429, 503):
            retry_after = response.headers.get("Retry-After")
            return B2RateLimitError(
                message,
                status_code=status_code,
                code=code,
                retry_after=float(retry_after)
                if retry_after and retry_after.isdigit()
                else None,
            )
        if status_code == 408 or 500 <= status_code < 600:
            return B2ServerError(message, status_code=status_code, code=code)
        return B2APIError(message, status_code=status_code, code=code)

    def _send(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Send one request and decode the JSON body.

        Raises:
            B2NetworkError: On connection failures and timeouts
            B2APIError: Mapped from the HTTP status otherwise
        """
        client = self._get_client()
        try:
            response = client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise B2NetworkError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise B2NetworkError(f"Network error: {e}") from e

        if not response.is_success:
            raise self._error_from_response(response)

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise B2InvalidResponseError("Invalid JSON response from server") from e
        if not isinstance(data, dict):
            raise B2InvalidResponseError(f"Unexpected response: {data!r}")
        return data

    def _retry_delay_for(self, error: B2TransportError, attempt: int) -> float:
        if isinstance(error, B2RateLimitError) and error.retry_after is not None:
            return error.retry_after
        return calculate_retry_delay(attempt, base_delay=self.retry_delay)

    def _with_retries(
        self, description: str, func: Callable[[], dict[str, Any]], retry: bool
    ) -> dict[str, Any]:
        """Call ``func``, retrying transient failures with backoff.

        Args:
            description: Used in debug logging
            func: Performs a single request
            retry: If False, make a single attempt

        Returns:
            Decoded JSON response
        """
        max_attempts = self.max_retries + 1 if retry else 1
        for attempt in range(max_attempts):
            try:
                return func()
            except B2TransportError as e:
                if attempt >= max_attempts - 1:
                    raise
                delay = self._retry_delay_for(e, attempt)
                logger.debug(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    description,
                    attempt + 1,
                    max_attempts,
                    delay,
                    e,
                )
                time.sleep(delay)
        # Unreachable: the loop either returns or raises
        raise B2APIError(f"{description} failed after all retry attempts")

    # =========================
    # Authorization
    # =========================

    def authorize(self) -> B2Authorization:
        """Authorize the account with the application key.

        Returns:
            Authorization data (API URL, token, account ID)

        Raises:
            B2AuthenticationError: If the key is rejected
        """
        url = f"{self.api_url}/{API_PREFIX}/b2_authorize_account"
        data = self._with_retries(
            "b2_authorize_account",
            lambda: self._send(
                "GET", url, auth=(self.key_id or "", self.application_key or "")
            ),
            retry=True,
        )
        authorization = B2Authorization.from_api_response(data)
        with self._auth_lock:
            self._authorization = authorization
        logger.debug("Authorized account %s", authorization.account_id)
        return authorization

    def _get_authorization(self) -> B2Authorization:
        with self._auth_lock:
            authorization = self._authorization
        if authorization is None:
            authorization = self.authorize()
        return authorization

    def _request(
        self, endpoint: str, payload: dict[str, Any], retry: bool = True
    ) -> dict[str, Any]:
        """Make an authorized API call.

        Args:
            endpoint: B2 API operation name (e.g. "b2_hide_file")
            payload: JSON body
            retry: Whether transient failures are retried here

        Returns:
            Response JSON data
        """
        reauthorized = False
        while True:
            authorization = self._get_authorization()
            url = f"{authorization.api_url}/{API_PREFIX}/{endpoint}"
            headers = {"Authorization": authorization.authorization_token}
            try:
                return self._with_retries(
                    endpoint,
                    lambda: self._send("POST", url, headers=headers, json=payload),
                    retry=retry,
                )
            except B2AuthenticationError as e:
                if e.code in EXPIRED_TOKEN_CODES and not reauthorized:
                    logger.debug("Authorization token expired, re-authorizing")
                    with self._auth_lock:
                        self._authorization = None
                    reauthorized = True
                    continue
                raise

    # =========================
    # Listing
    # =========================

    def iter_file_names(
        self,
        bucket_id: str,
        prefix: str = "",
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Iterator[list[B2FileVersion]]:
        """Iterate over the current file versions in a bucket, page by page.

        Args:
            bucket_id: Bucket to list
            prefix: Only list names starting with this prefix
            page_size: maxFileCount per call

        Yields:
            Lists of B2FileVersion, one per API page
        """
        start_file_name: str | None = None
        page = 0
        while True:
            payload: dict[str, Any] = {"bucketId": bucket_id, "maxFileCount": page_size}
            if prefix:
                payload["prefix"] = prefix
            if start_file_name is not None:
                payload["startFileName"] = start_file_name

            data = self._request("b2_list_file_names", payload)
            page += 1
            files = [B2FileVersion.from_api_response(f) for f in data.get("files", [])]
            logger.debug("Listed page %d with %d file(s)", page, len(files))
            yield files

            start_file_name = data.get("nextFileName")
            if not start_file_name:
                break

    # =========================
    # Upload Operations
    # =========================

    def _acquire_upload_url(self, bucket_id: str) -> B2UploadUrl:
        """Take an idle upload URL from the pool or request a new one.

        B2 upload URLs must not be used by two uploads at the same time.
        """
        with self._upload_urls_lock:
            pool = self._upload_urls.get(bucket_id)
            if pool:
                return pool.pop()

        # Single attempt, as for the upload itself
        data = self._request("b2_get_upload_url", {"bucketId": bucket_id}, retry=False)
        try:
            return B2UploadUrl(
                upload_url=data["uploadUrl"],
                authorization_token=data["authorizationToken"],
            )
        except KeyError as e:
            raise B2InvalidResponseError(
                f"Malformed upload URL response: missing {e}"
            ) from e

    def _release_upload_url(self, bucket_id: str, upload_url: B2UploadUrl) -> None:
        with self._upload_urls_lock:
            self._upload_urls.setdefault(bucket_id, []).append(upload_url)

    def upload_file(
        self,
        bucket_id: str,
        file_name: str,
        stream: BinaryIO,
        size: int,
        sha1: str,
        last_modified_millis: int | None = None,
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> B2FileVersion:
        """Upload a file in a single request.

        This makes exactly one upload attempt; callers decide about retries.
        An upload URL that failed is dropped from the pool.

        Args:
            bucket_id: Target bucket
            file_name: Object name in the bucket
            stream: Binary stream positioned at the start of the content
            size: Number of bytes to send
            sha1: SHA-1 hex digest of the content
            last_modified_millis: Local mtime, stored as file info
            progress_callback: Optional callback function(bytes_uploaded,
                total_bytes)

        Returns:
            The new file version

        Raises:
            B2TransportError: Transient failure, including an expired upload URL
            B2AuthenticationError: Key rejected
            B2QuotaError: Storage cap exceeded
        """
        upload_url = self._acquire_upload_url(bucket_id)
        headers = {
            "Authorization": upload_url.authorization_token,
            "X-Bz-File-Name": encode_file_name(file_name),
            "Content-Type": "b2/x-auto",
            "Content-Length": str(size),
            "X-Bz-Content-Sha1": sha1,
        }
        if last_modified_millis is not None:
            headers["X-Bz-Info-src_last_modified_millis"] = str(last_modified_millis)

        try:
            data = self._send(
                "POST",
                upload_url.upload_url,
                headers=headers,
                content=iter_file_chunks(stream, size, progress_callback),
            )
        except B2AuthenticationError as e:
            if e.code in EXPIRED_TOKEN_CODES:
                # Upload URL tokens expire on their own; a fresh URL fixes it
                raise B2NetworkError(
                    f"Upload URL expired: {e}", status_code=e.status_code, code=e.code
                ) from e
            raise

        self._release_upload_url(bucket_id, upload_url)
        return B2FileVersion.from_api_response(data)

    # =========================
    # Hide Operations
    # =========================

    def hide_file(self, bucket_id: str, file_name: str) -> B2FileVersion:
        """Hide a file so it is no longer listed as current.

        Older versions are kept; the bucket's lifecycle rules decide when
        they are removed. Single attempt, like :meth:`upload_file`.

        Args:
            bucket_id: Bucket containing the file
            file_name: Object name to hide

        Returns:
            The hide marker version
        """
        data = self._request(
            "b2_hide_file",
            {"bucketId": bucket_id, "fileName": file_name},
            retry=False,
        )
        return B2FileVersion.from_api_response(data)

"""Upload and hide operations with retry and cancellation."""

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from ..exceptions import (
    B2RateLimitError,
    B2TransportError,
    HideError,
    OperationError,
    UploadError,
)
from ..models import B2FileVersion
from ..protocols import StorageClientProtocol
from ..utils import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY,
    calculate_retry_delay,
    calculate_sha1,
)
from .scanner import LocalFile

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised when a run was cancelled while an operation waited to retry."""

    def __init__(self, key: str, attempts: int):
        super().__init__(f"{key}: cancelled after {attempts} attempt(s)")
        self.key = key
        self.attempts = attempts


class SyncOperations:
    """Runs single upload and hide operations against a bucket.

    Transient errors (:class:`B2TransportError`) are retried with
    exponential backoff. ``max_retries`` is the attempt ceiling: an operation
    makes at most that many calls in total. Anything else fails the
    operation immediately.
    """

    def __init__(
        self,
        client: StorageClientProtocol,
        bucket_id: str,
        prefix: str = "",
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        cancel_event: Optional[threading.Event] = None,
    ):
        """Initialize sync operations.

        Args:
            client: Storage client
            bucket_id: Target bucket
            prefix: Normalized remote prefix prepended to every key
            max_retries: Maximum number of attempts per operation (at least 1)
            retry_delay: Base delay for exponential backoff (seconds)
            cancel_event: Set to stop waiting for retries

        Raises:
            ValueError: If max_retries is less than 1
        """
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        self.client = client
        self.bucket_id = bucket_id
        self.prefix = prefix
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.cancel_event = cancel_event or threading.Event()

    def remote_name(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def upload(
        self,
        local_file: LocalFile,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> tuple[B2FileVersion, int]:
        """Upload a local file under its relative key.

        The SHA-1 is computed once; every attempt re-reads the file from
        the start.

        Args:
            local_file: File to upload
            progress_callback: Optional callback function(bytes_uploaded,
                total_bytes)

        Returns:
            Tuple of (new file version, number of attempts)

        Raises:
            UploadError: Retries exhausted, fatal API error, local read error
                or a size that no longer matches the scan
            OperationCancelled: Run cancelled before a retry
        """
        key = local_file.relative_path
        try:
            sha1 = calculate_sha1(local_file.path)
            current_size = local_file.path.stat().st_size
        except OSError as e:
            raise UploadError(key, e, attempts=0) from e
        if current_size != local_file.size:
            # Content-Length comes from the scan; a changed file needs a rescan
            error = ValueError(
                f"size changed since scan ({local_file.size} -> {current_size} bytes)"
            )
            raise UploadError(key, error, attempts=0)

        def attempt() -> B2FileVersion:
            with open(local_file.path, "rb") as stream:
                return self.client.upload_file(
                    self.bucket_id,
                    self.remote_name(key),
                    stream,
                    local_file.size,
                    sha1,
                    last_modified_millis=local_file.mtime_millis,
                    progress_callback=progress_callback,
                )

        return self._run_with_retries(key, attempt, UploadError)

    def hide(self, key: str) -> tuple[B2FileVersion, int]:
        """Hide the remote object stored under ``key``.

        Returns:
            Tuple of (hide marker version, number of attempts)

        Raises:
            HideError: Retries exhausted or fatal API error
            OperationCancelled: Run cancelled before a retry
        """
        return self._run_with_retries(
            key,
            lambda: self.client.hide_file(self.bucket_id, self.remote_name(key)),
            HideError,
        )

    def _run_with_retries(
        self,
        key: str,
        func: Callable[[], T],
        error_cls: type[OperationError],
    ) -> tuple[T, int]:
        max_attempts = self.max_retries
        for attempt in range(max_attempts):
            start = time.time()
            try:
                return func(), attempt + 1
            except B2TransportError as e:
                if attempt >= max_attempts - 1:
                    logger.debug(f"Giving up on {key} after {attempt + 1} attempts")
                    raise error_cls(key, e, attempts=attempt + 1) from e
                if isinstance(e, B2RateLimitError) and e.retry_after is not None:
                    delay = e.retry_after
                else:
                    delay = calculate_retry_delay(attempt, base_delay=self.retry_delay)
                logger.debug(
                    "%s failed after %.2fs (attempt %d/%d), retrying in %.1fs: %s",
                    key,
                    time.time() - start,
                    attempt + 1,
                    max_attempts,
                    delay,
                    e,
                )
                if self.cancel_event.wait(delay):
                    raise OperationCancelled(key, attempt + 1) from e
            except Exception as e:
                # Fatal API errors and local read errors (file vanished after scan)
                raise error_cls(key, e, attempts=attempt + 1) from e
        raise error_cls(key, RuntimeError("no attempts made"), attempts=0)

"""Utility functions for pyb2backup."""

import hashlib
import random
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional
from urllib.parse import quote

# =============================================================================
# Constants for backup runs
# =============================================================================

# Number of concurrent upload/hide workers
DEFAULT_WORKERS: int = 8

# Retry configuration for transient errors
DEFAULT_MAX_RETRIES: int = 5
DEFAULT_RETRY_DELAY: float = 2.0  # seconds
MAX_RETRY_DELAY: float = 60.0  # seconds

# Per-request network timeout
DEFAULT_TIMEOUT: float = 60.0  # seconds

# Max file names per b2_list_file_names call (B2 allows up to 10000)
DEFAULT_PAGE_SIZE: int = 1000

# Read size when hashing and streaming file content
READ_CHUNK_SIZE: int = 1024 * 1024


# =============================================================================
# Time utilities
# =============================================================================


def to_millis(timestamp: float) -> int:
    """Convert a Unix timestamp in seconds to whole milliseconds.

    Args:
        timestamp: Unix timestamp (seconds, may be fractional)

    Returns:
        Milliseconds since the epoch

    Examples:
        >>> to_millis(1.5)
        1500
        >>> to_millis(1700000000.0004)
        1700000000000
    """
    return int(timestamp * 1000)


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


# =============================================================================
# Hash calculation utilities
# =============================================================================


def calculate_sha1(file_path: Path, chunk_size: int = READ_CHUNK_SIZE) -> str:
    """Calculate the SHA-1 hex digest of a file, as B2 expects it.

    Args:
        file_path: Path to the file
        chunk_size: Number of bytes read at a time

    Returns:
        40 character lowercase hex digest
    """
    sha1 = hashlib.sha1()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            sha1.update(chunk)
    return sha1.hexdigest()


# =============================================================================
# Streaming utilities
# =============================================================================


def iter_file_chunks(
    stream: BinaryIO,
    total: int,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    chunk_size: int = READ_CHUNK_SIZE,
) -> Iterator[bytes]:
    """Yield a stream in chunks, reporting how many bytes were read so far.

    Args:
        stream: Open binary stream
        total: Expected total size, passed through to the callback
        progress_callback: Optional callback function(bytes_read, total_bytes)
        chunk_size: Chunk size in bytes

    Yields:
        Chunks of the stream
    """
    sent = 0
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        sent += len(chunk)
        if progress_callback:
            progress_callback(sent, total)
        yield chunk


# =============================================================================
# B2 helpers
# =============================================================================


def encode_file_name(file_name: str) -> str:
    """Percent-encode a file name for the X-Bz-File-Name header.

    B2 requires UTF-8 percent encoding with '/' left as is.

    Examples:
        >>> encode_file_name("docs/my file.txt")
        'docs/my%20file.txt'
    """
    return quote(file_name, safe="/")


def normalize_prefix(prefix: Optional[str]) -> str:
    """Normalize a remote prefix to "" or "some/dir/".

    Examples:
        >>> normalize_prefix("/backups/laptop")
        'backups/laptop/'
        >>> normalize_prefix(None)
        ''
    """
    if not prefix:
        return ""
    cleaned = prefix.replace("\\", "/").strip("/")
    return f"{cleaned}/" if cleaned else ""


def calculate_retry_delay(
    attempt: int,
    base_delay: float = DEFAULT_RETRY_DELAY,
    max_delay: float = MAX_RETRY_DELAY,
) -> float:
    """Calculate delay before next retry using exponential backoff.

    Args:
        attempt: Current attempt number (0-based)
        base_delay: Delay for the first retry in seconds
        max_delay: Upper bound for the delay

    Returns:
        Delay in seconds
    """
    # Exponential backoff with +/- 25% jitter to avoid thundering herd
    delay = min(base_delay * (2**attempt), max_delay)
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(0.0, delay + jitter)

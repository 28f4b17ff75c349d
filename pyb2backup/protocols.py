"""Protocol the sync engine expects from a storage client.

The engine never talks HTTP itself. Anything that provides these three
calls can be backed up into, which keeps the engine testable with plain
mocks.
"""

from typing import BinaryIO, Callable, Iterator, Optional, Protocol

from .models import B2FileVersion


class StorageClientProtocol(Protocol):
    """List, upload and hide objects in a bucket."""

    def iter_file_names(
        self,
        bucket_id: str,
        prefix: str = "",
        page_size: int = 1000,
    ) -> Iterator[list[B2FileVersion]]:
        """Yield pages of current file versions under ``prefix``."""
        ...

    def upload_file(
        self,
        bucket_id: str,
        file_name: str,
        stream: BinaryIO,
        size: int,
        sha1: str,
        last_modified_millis: Optional[int] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> B2FileVersion:
        """Upload ``size`` bytes from ``stream`` as ``file_name``."""
        ...

    def hide_file(self, bucket_id: str, file_name: str) -> B2FileVersion:
        """Hide the current version of ``file_name`` (soft delete)."""
        ...

"""Point-in-time view of the objects stored in the bucket."""

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Iterator, Optional

from ..exceptions import B2APIError, ListError
from ..models import B2FileVersion
from ..protocols import StorageClientProtocol
from ..utils import DEFAULT_PAGE_SIZE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteObject:
    """Metadata of the current version of a stored object."""

    key: str
    """Relative path, with the backup prefix removed"""

    size: int
    """Size in bytes"""

    content_digest: Optional[str]
    """SHA-1 hex digest (None when B2 does not have one)"""

    uploaded_at: int
    """Upload time in milliseconds since the epoch"""

    object_version_id: Optional[str]
    """B2 file ID of this version"""

    @classmethod
    def from_file_version(cls, version: B2FileVersion, key: str) -> "RemoteObject":
        return cls(
            key=key,
            size=version.content_length,
            content_digest=version.content_sha1,
            uploaded_at=version.upload_timestamp,
            object_version_id=version.file_id,
        )


class RemoteSnapshot(Mapping):
    """Immutable mapping of key -> RemoteObject.

    Built all-or-nothing by :meth:`fetch`: a partial listing would make the
    planner purge objects it simply has not seen.
    """

    def __init__(self, objects: Optional[dict[str, RemoteObject]] = None):
        self._objects: dict[str, RemoteObject] = dict(objects or {})

    @classmethod
    def from_objects(cls, objects: list[RemoteObject]) -> "RemoteSnapshot":
        return cls({obj.key: obj for obj in objects})

    @classmethod
    def fetch(
        cls,
        client: StorageClientProtocol,
        bucket_id: str,
        prefix: str = "",
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> "RemoteSnapshot":
        """List every current object under ``prefix``.

        Args:
            client: Storage client
            bucket_id: Bucket to list
            prefix: Remote name prefix that the local root maps to; it is
                stripped from keys
            page_size: Names requested per list call

        Returns:
            RemoteSnapshot instance

        Raises:
            ListError: If any page could not be fetched
        """
        start = time.time()
        objects: dict[str, RemoteObject] = {}
        pages = 0

        try:
            for page in client.iter_file_names(
                bucket_id, prefix=prefix, page_size=page_size
            ):
                pages += 1
                for version in page:
                    if not version.is_current_upload:
                        continue
                    key = version.file_name[len(prefix) :]
                    if not key:
                        continue
                    objects[key] = RemoteObject.from_file_version(version, key)
        except B2APIError as e:
            logger.debug(
                "Listing failed after %d page(s), discarding %d object(s)",
                pages,
                len(objects),
            )
            raise ListError(f"Failed to list bucket {bucket_id}: {e}") from e

        logger.debug(
            "Fetched %d remote object(s) in %d page(s) in %.2fs",
            len(objects),
            pages,
            time.time() - start,
        )
        return cls(objects)

    def __getitem__(self, key: str) -> RemoteObject:
        return self._objects[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._objects)

    def __len__(self) -> int:
        return len(self._objects)

    @property
    def total_size(self) -> int:
        return sum(obj.size for obj in self._objects.values())

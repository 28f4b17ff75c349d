"""Reconcile the local selection against a remote snapshot."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .scanner import LocalFile
from .snapshot import RemoteObject, RemoteSnapshot

logger = logging.getLogger(__name__)


class UploadReason(str, Enum):
    """Why a file is scheduled for upload."""

    NEW = "new"
    """No remote object under this key"""

    CHANGED = "changed"
    """Remote object differs in size or is older than the local file"""


@dataclass(frozen=True)
class PlannedUpload:
    """A local file that has to be uploaded."""

    file: LocalFile
    """Local file to upload"""

    reason: UploadReason
    """Why the file is uploaded"""

    @property
    def key(self) -> str:
        return self.file.relative_path


@dataclass(frozen=True)
class SyncPlan:
    """Uploads and purges needed to bring the bucket in line with the selection.

    A key never appears in both ``uploads`` and ``purges``.
    """

    uploads: tuple[PlannedUpload, ...] = ()
    """Files to upload, in tree traversal order"""

    purges: tuple[str, ...] = ()
    """Remote keys to hide, in sorted order"""

    unchanged_count: int = 0
    """Included files already up to date remotely"""

    protected: tuple[str, ...] = ()
    """Remote keys left alone because their local entry was unreadable"""

    @property
    def total_operations(self) -> int:
        return len(self.uploads) + len(self.purges)

    @property
    def is_empty(self) -> bool:
        return self.total_operations == 0

    @property
    def upload_bytes(self) -> int:
        return sum(upload.file.size for upload in self.uploads)

    def uploads_only(self) -> "SyncPlan":
        """Copy of this plan without purges."""
        return SyncPlan(
            uploads=self.uploads,
            unchanged_count=self.unchanged_count,
            protected=self.protected,
        )

    def purges_only(self) -> "SyncPlan":
        """Copy of this plan without uploads."""
        return SyncPlan(
            purges=self.purges,
            unchanged_count=self.unchanged_count,
            protected=self.protected,
        )


def _is_under(key: str, prefix: str) -> bool:
    if not prefix:
        return True
    return key == prefix or key.startswith(prefix + "/")


class SyncPlanner:
    """Compares effectively-included files with a RemoteSnapshot.

    Planning is pure: the same files and snapshot always give the same plan.

    Examples:
        >>> planner = SyncPlanner()
        >>> plan = planner.plan(tree.effective_included_files(), snapshot)
        >>> [u.key for u in plan.uploads]
    """

    def plan(
        self,
        files: Iterable[LocalFile],
        snapshot: RemoteSnapshot,
        keep_prefixes: Iterable[str] = (),
    ) -> SyncPlan:
        """Build a SyncPlan.

        Args:
            files: Effectively-included local files in traversal order
            snapshot: Current remote objects keyed by relative path
            keep_prefixes: Relative paths whose remote keys must not be purged
                (files or directories that could not be scanned)

        Returns:
            SyncPlan instance
        """
        keep = list(keep_prefixes)
        uploads: list[PlannedUpload] = []
        unchanged = 0
        seen: set[str] = set()

        for local_file in files:
            key = local_file.relative_path
            seen.add(key)
            remote = snapshot.get(key)

            if remote is None:
                uploads.append(PlannedUpload(local_file, UploadReason.NEW))
            elif self._has_changed(local_file, remote):
                uploads.append(PlannedUpload(local_file, UploadReason.CHANGED))
            else:
                unchanged += 1

        purges: list[str] = []
        protected: list[str] = []
        for key in sorted(snapshot):
            if key in seen:
                continue
            if any(_is_under(key, prefix) for prefix in keep):
                protected.append(key)
            else:
                purges.append(key)

        logger.debug(
            "Planned %d upload(s), %d purge(s), %d unchanged, %d protected",
            len(uploads),
            len(purges),
            unchanged,
            len(protected),
        )
        return SyncPlan(
            uploads=tuple(uploads),
            purges=tuple(purges),
            unchanged_count=unchanged,
            protected=tuple(protected),
        )

    @staticmethod
    def _has_changed(local_file: LocalFile, remote: RemoteObject) -> bool:
        if local_file.size != remote.size:
            return True
        return local_file.mtime_millis > remote.uploaded_at

"""Directory scanning utilities for backup runs."""

import fnmatch
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

from ..exceptions import ScanError
from ..utils import to_millis

logger = logging.getLogger(__name__)


class EntryKind(str, Enum):
    """Type of a tree node."""

    FILE = "file"
    DIRECTORY = "directory"


@dataclass
class FileNode:
    """A file or directory in the local tree.

    ``name`` is a single path segment; the full relative key is built from
    the names of all ancestors.
    """

    name: str
    """Path segment (empty for the root)"""

    kind: EntryKind
    """File or directory"""

    size: int = 0
    """File size in bytes (0 for directories)"""

    modified_time: float = 0.0
    """Last modification time (Unix timestamp)"""

    included: bool = True
    """Inclusion as last set on this node or inherited from its parent"""

    explicit: bool = False
    """Whether ``included`` was set on this node rather than inherited"""

    children: dict[str, "FileNode"] = field(default_factory=dict)
    """Child nodes keyed by name"""

    scan_error: Optional[ScanError] = None
    """Set when this entry could not be read or listed"""

    @property
    def is_dir(self) -> bool:
        return self.kind == EntryKind.DIRECTORY

    def add_child(self, child: "FileNode") -> None:
        self.children[child.name] = child

    def sorted_children(self) -> list["FileNode"]:
        """Children in traversal order: directories first, then by name."""
        return sorted(
            self.children.values(), key=lambda n: (not n.is_dir, n.name)
        )

    def walk(self) -> Iterator["FileNode"]:
        """Yield this node and all descendants, depth-first."""
        yield self
        for child in self.sorted_children():
            yield from child.walk()


@dataclass(frozen=True)
class LocalFile:
    """An effectively-included local file, ready for planning."""

    path: Path
    """Absolute path to the file"""

    relative_path: str
    """Relative path (using forward slashes for cross-platform compatibility)"""

    size: int
    """File size in bytes"""

    mtime: float
    """Last modification time (Unix timestamp)"""

    @property
    def mtime_millis(self) -> int:
        """Modification time in milliseconds, as compared against B2."""
        return to_millis(self.mtime)


class DirectoryScanner:
    """Scans a directory into a tree of FileNodes.

    Symlinks are never followed, so the tree cannot contain cycles.
    Unreadable entries are recorded as ScanError and scanning continues
    with their siblings.

    Examples:
        >>> scanner = DirectoryScanner(exclude_dot_files=True)
        >>> root, errors = scanner.scan_tree(Path("/home/user/documents"))

        >>> # With patterns
        >>> scanner = DirectoryScanner(ignore_patterns=["*.tmp", "cache/*"])
    """

    def __init__(
        self,
        ignore_patterns: Optional[list[str]] = None,
        exclude_dot_files: bool = False,
    ):
        """Initialize directory scanner.

        Args:
            ignore_patterns: List of glob patterns to ignore (e.g., ["*.log", "temp/*"])
            exclude_dot_files: Whether to exclude files/folders starting with dot
        """
        self.ignore_patterns = ignore_patterns or []
        self.exclude_dot_files = exclude_dot_files

    def should_ignore(self, path: Path, base_path: Path) -> bool:
        """Check if a path should be ignored based on patterns.

        Patterns are matched against both the name and the relative path.

        Args:
            path: Path to check
            base_path: Base path for relative path calculation

        Returns:
            True if path should be ignored
        """
        if self.exclude_dot_files and path.name.startswith("."):
            return True

        if self.ignore_patterns:
            relative_path = path.relative_to(base_path).as_posix()
            for pattern in self.ignore_patterns:
                if fnmatch.fnmatch(path.name, pattern) or fnmatch.fnmatch(
                    relative_path, pattern
                ):
                    logger.debug(f"Ignoring (pattern {pattern}): {relative_path}")
                    return True

        return False

    def scan_tree(
        self, directory: Path, default_included: bool = True
    ) -> tuple[FileNode, list[ScanError]]:
        """Recursively scan a local directory into a node tree.

        Args:
            directory: Root directory to scan
            default_included: Initial inclusion of every node

        Returns:
            Tuple of (root node, list of scan errors)

        Examples:
            >>> root, errors = DirectoryScanner().scan_tree(Path("/data"))
            >>> [child.name for child in root.sorted_children()]
        """
        root = FileNode(
            name="",
            kind=EntryKind.DIRECTORY,
            included=default_included,
            explicit=True,
        )
        errors: list[ScanError] = []
        self._scan_into(root, directory, directory, errors, default_included)
        return root, errors

    def _scan_into(
        self,
        node: FileNode,
        directory: Path,
        base_path: Path,
        errors: list[ScanError],
        default_included: bool,
    ) -> None:
        relative_dir = directory.relative_to(base_path).as_posix()

        try:
            items = sorted(directory.iterdir())
        except OSError as e:
            # Keep the directory in the tree so the failure stays visible
            error = ScanError(relative_dir, e)
            node.scan_error = error
            errors.append(error)
            logger.warning(f"Cannot list directory {directory}: {e}")
            return

        for item in items:
            try:
                # Ignore symlinks to prevent cycles
                if item.is_symlink():
                    continue
                if self.should_ignore(item, base_path):
                    continue

                if item.is_dir():
                    child = FileNode(
                        name=item.name,
                        kind=EntryKind.DIRECTORY,
                        included=default_included,
                    )
                    node.add_child(child)
                    self._scan_into(child, item, base_path, errors, default_included)
                elif item.is_file():
                    stat = item.stat()
                    node.add_child(
                        FileNode(
                            name=item.name,
                            kind=EntryKind.FILE,
                            size=stat.st_size,
                            modified_time=stat.st_mtime,
                            included=default_included,
                        )
                    )
            except OSError as e:
                error = ScanError(item.relative_to(base_path).as_posix(), e)
                errors.append(error)
                logger.warning(f"Cannot read {item}: {e}")
                # Placeholder for the unreadable entry
                node.add_child(
                    FileNode(
                        name=item.name,
                        kind=EntryKind.FILE,
                        included=default_included,
                        scan_error=error,
                    )
                )

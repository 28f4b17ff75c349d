"""In-memory model of the local tree with per-node inclusion.

Inclusion is inherited: a node without an explicit setting takes its
parent's inclusion. Changing a node's inclusion sets it explicitly and
resets all descendants to inherit the new value, after which any
descendant may be switched back on its own. The root starts explicitly
included (or excluded, see ``default_included``).
"""

import logging
from pathlib import Path
from typing import Iterable, Iterator, Optional

from ..exceptions import NodeNotFoundError, ScanError
from .scanner import DirectoryScanner, EntryKind, FileNode, LocalFile

logger = logging.getLogger(__name__)


def _split(node_path: str) -> list[str]:
    # Accept "a/b", "/a/b/", "./a/b" and Windows separators
    normalized = node_path.replace("\\", "/").strip("/")
    return [part for part in normalized.split("/") if part and part != "."]


def _join(parent: str, name: str) -> str:
    return f"{parent}/{name}" if parent else name


class FileTreeModel:
    """Tree of FileNodes rooted at a local directory."""

    def __init__(
        self,
        root_path: Path,
        root: FileNode,
        scan_errors: Optional[list[ScanError]] = None,
        default_included: bool = True,
    ):
        self.root_path = root_path
        self.root = root
        self.scan_errors: list[ScanError] = scan_errors or []
        self.default_included = default_included

    @classmethod
    def build(
        cls,
        root_path: Path,
        scanner: Optional[DirectoryScanner] = None,
        default_included: bool = True,
    ) -> "FileTreeModel":
        """Scan ``root_path`` and build the model.

        Unreadable entries do not abort the scan; they end up in
        ``scan_errors``.

        Args:
            root_path: Local directory to mirror
            scanner: Scanner to use (default: no ignore rules)
            default_included: Initial inclusion for every node

        Returns:
            FileTreeModel instance

        Raises:
            ValueError: If root_path is not an existing directory
        """
        if not root_path.exists():
            raise ValueError(f"Local directory does not exist: {root_path}")
        if not root_path.is_dir():
            raise ValueError(f"Local path is not a directory: {root_path}")

        scanner = scanner or DirectoryScanner()
        root, errors = scanner.scan_tree(root_path, default_included=default_included)
        model = cls(root_path, root, errors, default_included=default_included)
        logger.debug(
            "Built tree for %s with %d file(s), %d scan error(s)",
            root_path,
            model.file_count,
            len(errors),
        )
        return model

    @property
    def file_count(self) -> int:
        return sum(1 for node in self.root.walk() if node.kind == EntryKind.FILE)

    def find(self, node_path: str) -> FileNode:
        """Return the node at a relative path ("" is the root).

        Raises:
            NodeNotFoundError: If no node exists at that path
        """
        node = self.root
        for part in _split(node_path):
            child = node.children.get(part)
            if child is None:
                raise NodeNotFoundError(node_path)
            node = child
        return node

    def set_inclusion(self, node_path: str, included: bool) -> None:
        """Set inclusion on a node; descendants inherit the new value.

        Raises:
            NodeNotFoundError: If no node exists at that path
        """
        node = self.find(node_path)
        node.included = included
        node.explicit = True
        for descendant in node.walk():
            if descendant is node:
                continue
            descendant.included = included
            descendant.explicit = False

    def toggle_inclusion(self, node_path: str) -> bool:
        """Flip inclusion on a node.

        Returns:
            The new inclusion of the node

        Raises:
            NodeNotFoundError: If no node exists at that path
        """
        node = self.find(node_path)
        new_value = not node.included
        self.set_inclusion(node_path, new_value)
        return new_value

    def iter_nodes(self) -> Iterator[tuple[str, FileNode, bool]]:
        """Yield (relative_path, node, effective inclusion) depth-first.

        The root itself is not yielded.
        """

        def visit(
            node: FileNode, path: str, inherited: bool
        ) -> Iterator[tuple[str, FileNode, bool]]:
            for child in node.sorted_children():
                child_path = _join(path, child.name)
                effective = child.included if child.explicit else inherited
                yield child_path, child, effective
                if child.is_dir:
                    yield from visit(child, child_path, effective)

        root_effective = self.root.included
        yield from visit(self.root, "", root_effective)

    def effective_included_files(self) -> Iterator[LocalFile]:
        """Lazily yield every effectively-included file.

        Order is depth-first with directories before files, each sorted by
        name, so two calls on the same tree give the same sequence.
        """
        for relative_path, node, effective in self.iter_nodes():
            if node.kind == EntryKind.FILE and effective and node.scan_error is None:
                yield LocalFile(
                    path=self.root_path / relative_path,
                    relative_path=relative_path,
                    size=node.size,
                    mtime=node.modified_time,
                )

    def unreadable_paths(self) -> list[str]:
        """Relative paths of entries that could not be read or listed.

        The root is reported as "".
        """
        paths = [""] if self.root.scan_error is not None else []
        paths.extend(
            path for path, node, _ in self.iter_nodes() if node.scan_error is not None
        )
        return paths

    # =========================
    # Selection rules
    # =========================

    def selection_rules(self) -> list[tuple[str, bool]]:
        """Return the minimal ordered list of inclusion rules.

        Only nodes whose explicit setting differs from what they would
        inherit are listed. Applying the rules in order to a freshly built
        tree reproduces the current selection.
        """
        rules: list[tuple[str, bool]] = []
        if self.root.included != self.default_included:
            rules.append(("", self.root.included))

        for path, node, effective in self.iter_nodes():
            if not node.explicit:
                continue
            parent_path = path.rsplit("/", 1)[0] if "/" in path else ""
            inherited = self._effective(parent_path)
            if effective != inherited:
                rules.append((path, effective))
        return rules

    def apply_selection_rules(self, rules: Iterable[tuple[str, bool]]) -> int:
        """Apply rules produced by :meth:`selection_rules`.

        Rules for paths that no longer exist are skipped.

        Returns:
            Number of rules applied
        """
        applied = 0
        for path, included in rules:
            try:
                self.set_inclusion(path, included)
                applied += 1
            except NodeNotFoundError:
                logger.warning(f"Selection rule for missing path skipped: {path}")
        return applied

    def _effective(self, node_path: str) -> bool:
        node = self.root
        effective = node.included
        for part in _split(node_path):
            node = node.children[part]
            if node.explicit:
                effective = node.included
        return effective

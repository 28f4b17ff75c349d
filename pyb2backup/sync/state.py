"""Persistence of the user's include/exclude selection.

Only explicit rules are stored (see ``FileTreeModel.selection_rules``), so
a selection keeps working when files are added to or removed from the
backed-up directory between runs.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class SelectionState:
    """Saved selection for one local root directory."""

    root_path: str
    """Absolute path of the backed-up directory"""

    rules: list[tuple[str, bool]] = field(default_factory=list)
    """Ordered (relative_path, included) rules"""

    saved_at: Optional[str] = None
    """ISO timestamp of the last save"""

    def to_dict(self) -> dict:
        """Convert state to dictionary for JSON serialization."""
        return {
            "root_path": self.root_path,
            "rules": [
                {"path": path, "included": included} for path, included in self.rules
            ],
            "saved_at": self.saved_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SelectionState":
        """Create SelectionState from dictionary."""
        return cls(
            root_path=data.get("root_path", ""),
            rules=[(rule["path"], bool(rule["included"])) for rule in data["rules"]],
            saved_at=data.get("saved_at"),
        )


class SelectionStateManager:
    """Stores selection rules as JSON, one file per local root.

    Files live in the user's config directory and are keyed by a hash of
    the resolved root path.
    """

    def __init__(self, state_dir: Optional[Path] = None):
        """Initialize state manager.

        Args:
            state_dir: Directory to store state files. Defaults to
                      ~/.config/pyb2backup/selections/
        """
        if state_dir is None:
            state_dir = Path.home() / ".config" / "pyb2backup" / "selections"
        self.state_dir = state_dir

    def _get_state_file(self, root_path: Path) -> Path:
        key = hashlib.sha256(str(root_path.resolve()).encode()).hexdigest()[:16]
        return self.state_dir / f"{key}.json"

    def load_rules(self, root_path: Path) -> list[tuple[str, bool]]:
        """Load the saved rules for a root directory.

        Args:
            root_path: Local directory

        Returns:
            Saved rules, or an empty list if none (or unreadable)
        """
        state_file = self._get_state_file(root_path)

        if not state_file.exists():
            logger.debug(f"No saved selection at {state_file}")
            return []

        try:
            with open(state_file, encoding="utf-8") as f:
                state = SelectionState.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load selection from {state_file}: {e}")
            return []

        logger.debug(
            f"Loaded {len(state.rules)} selection rule(s) saved {state.saved_at}"
        )
        return state.rules

    def save_rules(self, root_path: Path, rules: list[tuple[str, bool]]) -> Path:
        """Save rules for a root directory.

        Args:
            root_path: Local directory
            rules: Ordered (relative_path, included) rules

        Returns:
            Path of the written state file

        Raises:
            OSError: If the file cannot be written
        """
        state = SelectionState(
            root_path=str(root_path.resolve()),
            rules=list(rules),
            saved_at=datetime.now().isoformat(),
        )
        state_file = self._get_state_file(root_path)
        self.state_dir.mkdir(parents=True, exist_ok=True)

        with open(state_file, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2)
        logger.debug(f"Saved {len(state.rules)} selection rule(s) to {state_file}")
        return state_file

    def clear_rules(self, root_path: Path) -> bool:
        """Remove the saved selection for a root directory.

        Returns:
            True if a selection was removed, False if none existed
        """
        state_file = self._get_state_file(root_path)

        if state_file.exists():
            state_file.unlink()
            logger.debug(f"Cleared selection at {state_file}")
            return True
        return False

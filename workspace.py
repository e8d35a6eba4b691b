"""Per-group workspace directories.

Each conversation owns one directory under ``<root>/groups``. Tool file
access is confined to it, and its ``memory.md`` is the persistent memory
document injected into every system prompt for that group.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

log = logging.getLogger(__name__)

MEMORY_FILE = "memory.md"

DEFAULT_MEMORY = """# Memory

This file stores persistent context that the assistant remembers across conversations.

## User Preferences
<!-- Add preferences here -->

## Notes
<!-- Add important notes here -->
"""

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class WorkspaceError(ValueError):
    """A path escapes the group workspace."""


def safe_group_dir(group_id: str) -> str:
    """'tg:-1001' → 'tg_-1001'."""
    name = _UNSAFE.sub("_", group_id).strip(".")
    return name or "_"


class GroupWorkspace:
    def __init__(self, root: Path, group_id: str):
        self.group_id = group_id
        self.path = (Path(root) / "groups" / safe_group_dir(group_id)).resolve()

    def ensure(self) -> Path:
        self.path.mkdir(parents=True, exist_ok=True)
        return self.path

    def resolve(self, relative: str) -> Path:
        """Resolve a tool-supplied path inside the workspace."""
        relative = (relative or ".").strip()
        target = (self.path / relative.lstrip("/")).resolve()
        if target != self.path and not str(target).startswith(str(self.path) + os.sep):
            raise WorkspaceError(f"Path outside workspace: {relative}")
        return target

    # --- Memory document ---

    @property
    def memory_path(self) -> Path:
        return self.path / MEMORY_FILE

    def read_memory(self) -> str | None:
        """Return memory text, or None when the file does not exist."""
        try:
            return self.memory_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write_memory(self, content: str) -> None:
        self.ensure()
        self.memory_path.write_text(content, encoding="utf-8")

    def bootstrap_memory(self) -> bool:
        """Create the default memory file if missing. True when created."""
        if self.memory_path.exists():
            return False
        self.write_memory(DEFAULT_MEMORY)
        log.info("Created default memory for %s", self.group_id)
        return True


class Workspaces:
    """Factory for per-group workspaces under one root."""

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()

    def for_group(self, group_id: str) -> GroupWorkspace:
        return GroupWorkspace(self.root, group_id)

"""File operation tools — read_file, write_file, list_files.

Paths are relative to the conversation's workspace; anything resolving
outside it is refused.
"""

from __future__ import annotations

from workspace import GroupWorkspace, WorkspaceError

from . import ToolError


def _resolve(workspace: GroupWorkspace, path: str):
    try:
        return workspace.resolve(path)
    except WorkspaceError as e:
        raise ToolError(str(e)) from e


def tool_read_file(path: str, workspace: GroupWorkspace) -> str:
    """Read a UTF-8 text file from the workspace."""
    p = _resolve(workspace, path)
    if not p.exists():
        raise ToolError(f"File not found: {path}")
    if not p.is_file():
        raise ToolError(f"Not a file: {path}")
    try:
        return p.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        raise ToolError(f"Cannot read binary file: {path}") from None


def tool_write_file(path: str, content: str, workspace: GroupWorkspace) -> str:
    """Write content to a workspace file, creating directories as needed."""
    workspace.ensure()
    p = _resolve(workspace, path)
    if p == workspace.path or p.is_dir():
        raise ToolError(f"Is a directory: {path}")
    p.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    p.write_bytes(data)
    return f"Written {len(data)} bytes to {path}"


def tool_list_files(workspace: GroupWorkspace, path: str = ".") -> str:
    """List a workspace directory; subdirectories carry a trailing slash."""
    workspace.ensure()
    p = _resolve(workspace, path)
    if not p.exists():
        raise ToolError(f"Directory not found: {path}")
    if not p.is_dir():
        raise ToolError(f"Not a directory: {path}")
    entries = sorted(p.iterdir(), key=lambda e: (not e.is_dir(), e.name))
    if not entries:
        return "(empty directory)"
    return "\n".join(f"{e.name}/" if e.is_dir() else e.name for e in entries)


TOOLS = [
    {
        "name": "read_file",
        "description": "Read a text file from the conversation workspace.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path relative to the workspace"},
            },
            "required": ["path"],
        },
        "function": tool_read_file,
    },
    {
        "name": "write_file",
        "description": "Write content to a file in the conversation workspace. "
                       "Creates directories as needed. Overwrites existing files.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path relative to the workspace"},
                "content": {"type": "string", "description": "Content to write"},
            },
            "required": ["path", "content"],
        },
        "function": tool_write_file,
    },
    {
        "name": "list_files",
        "description": "List files and directories in the conversation workspace.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory relative to the workspace (default: root)",
                         "default": "."},
            },
        },
        "function": tool_list_files,
    },
]

"""Memory tools — read_memory and update_memory.

The memory document is the group's ``memory.md``; it is appended to the
system prompt on every invocation.
"""

from __future__ import annotations

from workspace import GroupWorkspace

from . import ToolError


def tool_read_memory(workspace: GroupWorkspace) -> str:
    content = workspace.read_memory()
    if content is None:
        return "(No memory file exists yet. Use update_memory to create one.)"
    return content or "(Memory file is empty)"


def tool_update_memory(content: str, workspace: GroupWorkspace, mode: str = "append") -> str:
    if mode not in ("append", "replace"):
        raise ToolError(f"mode must be 'append' or 'replace', got {mode!r}")
    if mode == "append":
        existing = workspace.read_memory() or ""
        content = existing.rstrip("\n") + "\n\n" + content if existing.strip() else content
    workspace.write_memory(content)
    return "Memory updated successfully."


TOOLS = [
    {
        "name": "read_memory",
        "description": "Read the persistent memory document. Check it before updating.",
        "input_schema": {"type": "object", "properties": {}},
        "function": tool_read_memory,
    },
    {
        "name": "update_memory",
        "description": "Persist important context to memory.md, which is loaded on every "
                       "conversation. Use mode=\"append\" to add or mode=\"replace\" to overwrite.",
        "input_schema": {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "Text to store"},
                "mode": {"type": "string", "enum": ["append", "replace"], "default": "append"},
            },
            "required": ["content"],
        },
        "function": tool_update_memory,
    },
]

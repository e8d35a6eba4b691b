"""System prompt builder.

Persona line, the tool catalog, behavior guidelines, and the group's
memory document appended under ``## Persistent Memory``.
"""

from __future__ import annotations

GUIDELINES = [
    "Be concise and direct.",
    "Use tools proactively when they help answer the question.",
    "Update memory when you learn important preferences or context.",
    "For scheduled tasks, confirm the schedule with the user.",
    "Wrap private reasoning in <internal> tags; it is removed before delivery.",
]


def build_system_prompt(
    assistant_name: str,
    tool_descriptions: list[tuple[str, str]],
    memory: str | None = None,
) -> str:
    parts = [
        f"You are {assistant_name}, a personal AI assistant.",
        "",
        "You have access to the following tools:",
    ]
    parts.extend(f"- **{name}**: {desc}" for name, desc in tool_descriptions)
    parts.extend(["", "Guidelines:"])
    parts.extend(f"- {g}" for g in GUIDELINES)

    if memory and memory.strip():
        parts.extend(["", "## Persistent Memory", "", memory.strip()])

    return "\n".join(parts)

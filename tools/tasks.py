"""Task creation tool — create_task.

The tool does not touch storage. It validates the schedule and emits a
task-created message; the orchestrator persists the task.
"""

from __future__ import annotations

from collections.abc import Callable

import cron
from protocol import TaskCreated
from store import Task

from . import ToolError


# Async so the registry runs it on the event loop; emit is not thread-safe.
async def tool_create_task(schedule: str, prompt: str, group_id: str,
                           emit: Callable[[TaskCreated], None]) -> str:
    schedule = " ".join(schedule.split())
    error = cron.validate(schedule)
    if error:
        raise ToolError(f"invalid cron schedule {schedule!r}: {error}")
    if not prompt.strip():
        raise ToolError("prompt must not be empty")

    task = Task(group_id=group_id, schedule=schedule, prompt=prompt)
    emit(TaskCreated(task=task.to_dict()))
    return (f"Task created successfully.\nSchedule: {schedule} ({cron.humanize(schedule)})"
            f"\nPrompt: {prompt}")


TOOLS = [
    {
        "name": "create_task",
        "description": "Schedule a recurring task with a cron expression "
                       "(minute hour day-of-month month day-of-week). The prompt runs "
                       "in this conversation each time the schedule fires.",
        "input_schema": {
            "type": "object",
            "properties": {
                "schedule": {"type": "string", "description": "Cron expression, e.g. \"0 9 * * 1-5\""},
                "prompt": {"type": "string", "description": "Instruction to run when the task fires"},
            },
            "required": ["schedule", "prompt"],
        },
        "function": tool_create_task,
    },
]

"""Tool registry — registration, dispatch, error isolation, output truncation."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_TRUNCATION = 100_000


class ToolError(Exception):
    """Raised by a tool for a failure the model should read about."""


def tool_error(name: str, message: Any) -> str:
    return f"Tool error ({name}): {message}"


class ToolRegistry:
    """Registers tool functions and dispatches calls from the agentic loop.

    Per-call context (``group_id``, ``workspace``, ``emit``) is passed to
    ``execute`` as keyword arguments and handed only to tools whose
    signature names it.
    """

    def __init__(self, truncation_limit: int = DEFAULT_TRUNCATION):
        self._tools: dict[str, dict] = {}
        self.truncation_limit = truncation_limit

    def register(self, name: str, description: str, input_schema: dict,
                 func: Callable[..., Any]) -> None:
        """Register a tool function."""
        self._tools[name] = {
            "name": name,
            "description": description,
            "input_schema": input_schema,
            "function": func,
        }

    def register_many(self, tools: list[dict]) -> None:
        """Register multiple tools from a TOOLS list."""
        for t in tools:
            self.register(
                name=t["name"],
                description=t["description"],
                input_schema=t["input_schema"],
                func=t["function"],
            )

    def get_schemas(self) -> list[dict]:
        """Return tool schemas for LLM (without function references)."""
        return [
            {
                "name": t["name"],
                "description": t["description"],
                "input_schema": t["input_schema"],
            }
            for t in self._tools.values()
        ]

    def get_brief_descriptions(self) -> list[tuple[str, str]]:
        """Return (name, description) pairs for the system prompt."""
        return [(t["name"], t["description"]) for t in self._tools.values()]

    async def execute(self, name: str, arguments: dict, **context: Any) -> str:
        """Execute a tool call. Never raises; failures come back as text."""
        if name not in self._tools:
            return tool_error(name, "unknown tool")
        if not isinstance(arguments, dict):
            return tool_error(name, f"arguments must be an object, got {type(arguments).__name__}")

        func = self._tools[name]["function"]
        kwargs = dict(arguments)
        params = inspect.signature(func).parameters
        for dep, value in context.items():
            if dep in params:
                kwargs[dep] = value

        try:
            if inspect.iscoroutinefunction(func):
                result = await func(**kwargs)
            else:
                result = await asyncio.to_thread(func, **kwargs)
        except ToolError as e:
            log.info("Tool %s: %s", name, e)
            return tool_error(name, e)
        except TypeError as e:
            log.warning("Tool %s argument error: %s", name, e)
            return tool_error(name, e)
        except Exception as e:
            log.error("Tool %s failed: %s", name, e, exc_info=True)
            return tool_error(name, e)

        result_str = result if isinstance(result, str) else str(result)
        if len(result_str) > self.truncation_limit:
            result_str = result_str[:self.truncation_limit] + \
                f"\n[truncated at {self.truncation_limit} chars]"
        return result_str

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())


def create_default_registry(truncation_limit: int = DEFAULT_TRUNCATION) -> ToolRegistry:
    """Registry holding the full assistant tool catalog."""
    from . import filesystem, javascript, memory_tools, shell, tasks, web

    registry = ToolRegistry(truncation_limit=truncation_limit)
    for module in (shell, javascript, filesystem, web, memory_tools, tasks):
        registry.register_many(module.TOOLS)
    return registry

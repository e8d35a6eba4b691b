"""Shell execution tool — bash."""

from __future__ import annotations

import asyncio
import logging
import os
import signal

from workspace import GroupWorkspace

from . import ToolError

log = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30
_MAX_TIMEOUT = 120

# Environment variable patterns to filter out of child processes
_SECRET_PREFIXES = ("CLAWD_",)
_SECRET_SUFFIXES = ("_KEY", "_TOKEN", "_SECRET", "_PASSWORD", "_CREDENTIALS", "_PASS")


def configure(default_timeout: int = 30, max_timeout: int = 120) -> None:
    global _DEFAULT_TIMEOUT, _MAX_TIMEOUT
    _DEFAULT_TIMEOUT = default_timeout
    _MAX_TIMEOUT = max_timeout


def safe_env() -> dict[str, str]:
    """Build environment dict with secret variables filtered out."""
    env = {}
    for key, val in os.environ.items():
        if any(key.startswith(p) for p in _SECRET_PREFIXES):
            continue
        if any(key.endswith(s) for s in _SECRET_SUFFIXES):
            continue
        env[key] = val
    return env


async def kill_group(proc: asyncio.subprocess.Process) -> None:
    """Kill the process and its children, then reap it."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


async def tool_bash(command: str, workspace: GroupWorkspace,
                    timeout: int | None = None) -> str:
    """Run a shell command in the group workspace and return its output."""
    if timeout is None:
        timeout = _DEFAULT_TIMEOUT
    timeout = max(1, min(int(timeout), _MAX_TIMEOUT))

    cwd = workspace.ensure()
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
        env=safe_env(),
        start_new_session=True,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        await kill_group(proc)
        raise ToolError(f"command timed out after {timeout}s") from None
    except asyncio.CancelledError:
        log.info("bash cancelled, killing pid %d", proc.pid)
        await kill_group(proc)
        raise

    out = stdout.decode("utf-8", errors="replace") if stdout else ""
    err = stderr.decode("utf-8", errors="replace") if stderr else ""

    result = out
    if err:
        if result and not result.endswith("\n"):
            result += "\n"
        result += err

    if proc.returncode != 0:
        result += f"\n[exit code: {proc.returncode}]"

    return result or "(no output)"


TOOLS = [
    {
        "name": "bash",
        "description": "Execute a shell command in the conversation workspace. "
                       "Returns stdout, stderr, and the exit code on failure.",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command to execute"},
                "timeout": {"type": "integer", "description": "Timeout in seconds (default: 30, max: 120)"},
            },
            "required": ["command"],
        },
        "function": tool_bash,
    },
]

"""Script evaluation tool — javascript.

Code runs in a separate ``node`` process inside a fresh ``vm`` context.
The context is built from a null-prototype object and its ``console`` is
defined by code running inside it, so no host-realm function is reachable
from the script. String code generation (``eval``, ``Function``) and wasm
are disabled in the context, and the host's ``process``, ``require`` and
``fetch`` globals are deleted before the script runs.

The process runs with Node's permission model enabled (the flag name is
picked from ``node --version``), a capped heap, a scrubbed environment and
a throwaway working directory.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import tempfile

from . import ToolError
from .shell import kill_group, safe_env

log = logging.getLogger(__name__)

HEAP_FLAG = "--max-old-space-size=64"

_NODE = "node"
_FLAGS: tuple[str, ...] | None = None  # None: pick from the installed node version
_detected: tuple[str, ...] | None = None
_TIMEOUT = 10

_RUNNER = r"""
const vm = require('vm');
const stdout = process.stdout;
const stderr = process.stderr;
const proc = process;
let src = '';
process.stdin.setEncoding('utf8');
process.stdin.on('data', (c) => { src += c; });
process.stdin.on('end', () => {
  for (const name of ['process', 'require', 'module', 'exports', 'fetch', 'Buffer',
                      'WebSocket', 'EventSource', 'navigator']) {
    try { delete globalThis[name]; } catch (e) {}
    try { if (name in globalThis) globalThis[name] = undefined; } catch (e) {}
  }
  const ctx = vm.createContext(Object.create(null), {
    codeGeneration: { strings: false, wasm: false },
    microtaskMode: 'afterEvaluate',
  });
  const opts = { timeout: TIMEOUT_MS };
  vm.runInContext(
    "globalThis.__logs = [];" +
    "globalThis.console = { log: (...a) => { __logs.push(a.map((v) => " +
    "(typeof v === 'string' ? v : JSON.stringify(v))).join(' ')); } };",
    ctx);
  const text = (code) => {
    const v = vm.runInContext(code, ctx, opts);
    return typeof v === 'string' ? v : '';
  };
  try {
    ctx.__result = vm.runInContext(src, ctx, opts);
    const out = text(
      "(() => { const r = globalThis.__result;" +
      " if (r === undefined) return '(no return value)';" +
      " if (typeof r === 'string') return r;" +
      " let s; try { s = JSON.stringify(r, null, 2); } catch (e) { s = undefined; }" +
      " return s === undefined ? String(r) : s; })()");
    const logs = text("Array.isArray(globalThis.__logs) ? __logs.join('\\n') : ''");
    stdout.write((logs ? logs + '\n' : '') + out);
  } catch (e) {
    let msg;
    try {
      msg = e && typeof e.message === 'string' ? String(e.name) + ': ' + e.message : String(e);
    } catch (inner) {
      msg = 'Uncaught exception';
    }
    stderr.write(msg);
    proc.exitCode = 1;
  }
});
"""

_VERSION = re.compile(r"v?(\d+)\.(\d+)")


def permission_flag(version: str) -> str | None:
    """Permission-model flag for a ``node --version`` string.

    Node 20 to 22.12 call it ``--experimental-permission``; 22.13 and 23.5
    onward call it ``--permission``. Older releases have none.
    """
    m = _VERSION.match(version.strip())
    if not m:
        return None
    major, minor = int(m.group(1)), int(m.group(2))
    if major > 23 or (major, minor) >= (23, 5) or (major == 22 and minor >= 13):
        return "--permission"
    if major >= 20:
        return "--experimental-permission"
    return None


def configure(node: str = "node", flags: list[str] | None = None, timeout: int = 10) -> None:
    global _NODE, _FLAGS, _TIMEOUT, _detected
    _NODE = node
    _FLAGS = tuple(flags) if flags is not None else None
    _TIMEOUT = timeout
    _detected = None


async def _node_flags(node: str) -> tuple[str, ...]:
    global _detected
    if _FLAGS is not None:
        return _FLAGS
    if _detected is None:
        proc = await asyncio.create_subprocess_exec(
            node, "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        out, _ = await proc.communicate()
        version = out.decode("utf-8", errors="replace").strip()
        flag = permission_flag(version)
        if flag is None:
            log.warning("node %s has no permission model; javascript runs without it",
                        version or "(unknown version)")
        _detected = (flag, HEAP_FLAG) if flag else (HEAP_FLAG,)
    return _detected


async def tool_javascript(code: str) -> str:
    """Evaluate JavaScript and return the last expression's value."""
    node = shutil.which(_NODE)
    if node is None:
        raise ToolError(f"JavaScript runtime not available ({_NODE!r} not found)")

    flags = await _node_flags(node)
    runner = _RUNNER.replace("TIMEOUT_MS", str(_TIMEOUT * 1000))
    with tempfile.TemporaryDirectory(prefix="clawd-js-") as cwd:
        proc = await asyncio.create_subprocess_exec(
            node, *flags, "-e", runner,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=safe_env(),
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(code.encode("utf-8")), timeout=_TIMEOUT + 2,
            )
        except TimeoutError:
            await kill_group(proc)
            raise ToolError(f"script timed out after {_TIMEOUT}s") from None
        except asyncio.CancelledError:
            await kill_group(proc)
            raise

    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()
        raise ToolError(detail or f"node exited with code {proc.returncode}")
    return stdout.decode("utf-8", errors="replace")


TOOLS = [
    {
        "name": "javascript",
        "description": "Evaluate JavaScript in an isolated context and return the value of "
                       "the last expression. Lighter than bash; use for calculations and data "
                       "transforms. No network, filesystem, require() or eval().",
        "input_schema": {
            "type": "object",
            "properties": {
                "code": {"type": "string", "description": "JavaScript source"},
            },
            "required": ["code"],
        },
        "function": tool_javascript,
    },
]

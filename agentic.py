"""Provider-agnostic agentic tool-use loop.

The core of the agent. Takes a provider, messages and the tool registry,
and loops until the model gives a final answer or the iteration ceiling
is reached. Everything observable (typing, token usage, tool activity,
thinking log, result) is posted through an ``emit`` callback as worker
protocol messages.

Only the final turn's text becomes the response. Text produced alongside
tool calls is logged to the thinking log but not delivered.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Callable
from typing import assert_never

import httpx

from protocol import (
    Cancel,
    Compact,
    CompactDone,
    Error,
    Invoke,
    Response,
    ThinkingLog,
    TokenUsage,
    ToolActivity,
    Typing,
    WorkerInbound,
    WorkerOutbound,
)
from providers import LLMProvider, create_provider
from providers import context_limit as model_context_limit
from tools import ToolError, ToolRegistry
from tools.web import fetch_directive
from workspace import Workspaces

log = logging.getLogger(__name__)

MAX_ITERATIONS = 25
ITERATION_LIMIT_TEXT = (
    f"⚠️ Reached maximum tool-use iterations ({MAX_ITERATIONS}). "
    "Stopping to avoid excessive API usage."
)
NO_RESPONSE = "(no response)"
COMPACTION_MAX_TOKENS = 4096

COMPACTION_TASK = "\n".join([
    "",
    "## COMPACTION TASK",
    "",
    "The conversation context is getting large. Produce a concise summary of the conversation so far.",
    "Include key facts, decisions, user preferences, and any important context.",
    "The summary will replace the full conversation history to stay within token limits.",
    "Be thorough but concise, keeping only the essential information.",
])
COMPACTION_REQUEST = (
    "Please provide a concise summary of our entire conversation so far. Include all key facts, "
    "decisions, code discussed, and important context. This summary will replace the full history."
)

_INTERNAL = re.compile(r"<internal>[\s\S]*?</internal>")
_FETCH_DIRECTIVE = re.compile(r"minimax:tool_call\s+(https?://\S+)", re.IGNORECASE)

Emit = Callable[[WorkerOutbound], None]
ProviderFactory = Callable[..., LLMProvider]


def strip_internal(text: str) -> str:
    return _INTERNAL.sub("", text).strip()


def _preview(value: str, limit: int) -> str:
    return value if len(value) <= limit else value[:limit] + "..."


def _thinking(emit: Emit, group_id: str, kind: str, label: str, detail: str | None = None) -> None:
    emit(ThinkingLog(group_id=group_id, kind=kind, timestamp=int(time.time() * 1000),  # type: ignore[arg-type]
                     label=label, detail=detail))


async def _follow_fetch_directive(text: str) -> str:
    """Append the body of a URL the model asked for inline, if any."""
    match = _FETCH_DIRECTIVE.search(text)
    if not match:
        return text
    url = match.group(1)
    log.info("Following inline fetch directive: %s", url)
    try:
        extra = await fetch_directive(url)
    except (ToolError, httpx.HTTPError) as e:
        return f"{text}\n\n[Tool fetch error]: {e}"
    return f"{text}\n\n[Tool fetch result from {url}]:\n{extra}"


async def run_tool_loop(
    provider: LLMProvider,
    system_prompt: str,
    messages: list[dict],
    tools: ToolRegistry,
    group_id: str,
    emit: Emit,
    max_tokens: int,
    workspace=None,
    max_iterations: int = MAX_ITERATIONS,
) -> str:
    """Run the request/execute/respond cycle and emit the final Response.

    Args:
        provider: LLM provider instance.
        system_prompt: Plain-text system prompt.
        messages: Conversation in internal format. Not mutated.
        tools: Registry used for schemas and execution.
        group_id: Conversation the invocation belongs to.
        emit: Receives every outbound protocol message.
        max_tokens: Output token limit per round trip.
        workspace: GroupWorkspace handed to file-touching tools.
        max_iterations: Round-trip ceiling.

    Returns:
        The delivered text (final answer or the iteration-limit notice).
        Provider errors propagate to the caller.
    """
    working = list(messages)
    system = provider.format_system(system_prompt)
    fmt_tools = provider.format_tools(tools.get_schemas())
    limit = model_context_limit(provider.model)

    for iteration in range(1, max_iterations + 1):
        _thinking(emit, group_id, "api-call", f"API call #{iteration}",
                  f"{len(working)} messages")
        response = await provider.complete(
            system, provider.format_messages(working), fmt_tools, max_tokens=max_tokens,
        )

        if response.usage is not None:
            emit(TokenUsage(
                group_id=group_id,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                cache_read_tokens=response.usage.cache_read_tokens,
                cache_creation_tokens=response.usage.cache_creation_tokens,
                context_limit=limit,
            ))
        if response.text:
            _thinking(emit, group_id, "text", "Response text", _preview(response.text, 200))

        if response.stop_reason == "tool_use" and response.tool_calls:
            results = []
            for tc in response.tool_calls:
                log.info("Tool call: %s(%s)", tc.name, _preview(str(tc.arguments), 200))
                _thinking(emit, group_id, "tool-call", f"Tool: {tc.name}",
                          _preview(json.dumps(tc.arguments, ensure_ascii=False, default=str), 300))
                emit(ToolActivity(group_id=group_id, tool=tc.name, status="running"))
                output = await tools.execute(
                    tc.name, tc.arguments, group_id=group_id, workspace=workspace, emit=emit,
                )
                _thinking(emit, group_id, "tool-result", f"Result: {tc.name}", _preview(output, 500))
                emit(ToolActivity(group_id=group_id, tool=tc.name, status="done"))
                results.append({"tool_call_id": tc.id, "content": output})

            working.append(response.to_internal_message())
            working.append({"role": "tool_results", "results": results})
            emit(Typing(group_id=group_id))
            continue

        if response.stop_reason == "max_tokens":
            log.warning("Response truncated (max_tokens) on iteration %d", iteration)
        text = strip_internal(response.text or "") or NO_RESPONSE
        text = await _follow_fetch_directive(text)
        emit(Response(group_id=group_id, text=text))
        return text

    log.warning("Max iterations (%d) reached for %s", max_iterations, group_id)
    emit(Response(group_id=group_id, text=ITERATION_LIMIT_TEXT))
    return ITERATION_LIMIT_TEXT


class AgentRunner:
    """Handles worker protocol requests for one orchestrator.

    An Invoke or Compact runs inside the caller's task; a Cancel cancels
    whichever of those is in flight.
    """

    def __init__(self, tools: ToolRegistry, workspaces: Workspaces,
                 provider_factory: ProviderFactory = create_provider):
        self.tools = tools
        self.workspaces = workspaces
        self.provider_factory = provider_factory
        self._active: asyncio.Task | None = None

    @property
    def busy(self) -> bool:
        return self._active is not None and not self._active.done()

    async def run(self, message: WorkerInbound, emit: Emit) -> None:
        if isinstance(message, Invoke):
            await self._tracked(self._invoke(message, emit))
        elif isinstance(message, Compact):
            await self._tracked(self._compact(message, emit))
        elif isinstance(message, Cancel):
            self._cancel()
        else:
            assert_never(message)

    async def _tracked(self, coro) -> None:
        self._active = asyncio.current_task()
        try:
            await coro
        finally:
            self._active = None

    def _cancel(self) -> None:
        if self.busy:
            log.info("Cancelling in-flight agent request")
            self._active.cancel()  # type: ignore[union-attr]
        else:
            log.debug("Cancel requested with nothing in flight")

    def _provider(self, request: Invoke | Compact) -> LLMProvider:
        return self.provider_factory(
            request.provider, request.model, request.max_tokens,
            request.credentials, request.provider_urls,
        )

    async def _invoke(self, request: Invoke, emit: Emit) -> None:
        group_id = request.group_id
        _thinking(emit, group_id, "info", "Starting", f"{request.provider} / {request.model}")
        try:
            provider = self._provider(request)
            await run_tool_loop(
                provider=provider,
                system_prompt=request.system_prompt,
                messages=request.messages,
                tools=self.tools,
                group_id=group_id,
                emit=emit,
                max_tokens=request.max_tokens,
                workspace=self.workspaces.for_group(group_id),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Agent invocation for %s failed: %s", group_id, e, exc_info=True)
            emit(Error(group_id=group_id, error=str(e) or type(e).__name__))

    async def _compact(self, request: Compact, emit: Emit) -> None:
        group_id = request.group_id
        _thinking(emit, group_id, "info", "Compacting context",
                  f"{len(request.messages)} messages")
        try:
            provider = self._provider(request)
            summary = await provider.summarize(
                request.system_prompt + "\n" + COMPACTION_TASK,
                [*request.messages, {"role": "user", "content": COMPACTION_REQUEST}],
                min(request.max_tokens, COMPACTION_MAX_TOKENS),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Compaction for %s failed: %s", group_id, e, exc_info=True)
            emit(Error(group_id=group_id, error=f"Compaction failed: {e}"))
            return
        if not summary:
            emit(Error(group_id=group_id, error="Compaction failed: provider returned no summary"))
            return
        _thinking(emit, group_id, "info", "Compaction complete", _preview(summary, 200))
        emit(CompactDone(group_id=group_id, summary=summary))

"""Orchestrator — the top-level coordinator.

Owns the runtime settings (provider, model, credentials, assistant name),
the FIFO message queue and the single global ``processing`` flag. Wires
channels → queue → agent runner → router → persistence, and publishes
every observable transition on an event bus.

One invocation runs at a time across all conversations. Unrelated groups
wait behind each other; that is the throughput ceiling of this design,
acceptable for a single-user assistant.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import defaultdict, deque
from collections.abc import Callable
from enum import Enum
from typing import Any, assert_never

import providers
from agentic import AgentRunner
from channels import InboundMessage, new_message_id
from config import Config
from context import build_system_prompt
from protocol import (
    Cancel,
    Compact,
    CompactDone,
    Error,
    Invoke,
    Response,
    TaskCreated,
    ThinkingLog,
    TokenUsage,
    ToolActivity,
    Typing,
    WorkerOutbound,
)
from router import DeliveryError, Router
from store import Store, StoredMessage, Task, build_conversation, now_ms
from tools import create_default_registry
from workspace import Workspaces

log = logging.getLogger(__name__)

NOT_CONFIGURED = ("AI Provider not fully configured. "
                  "Go to Settings to add the required API key or URL.")
COMPACT_NOT_CONFIGURED = "AI Provider not configured. Cannot compact context."
COMPACT_BUSY = "Cannot compact while processing. Wait for the current response to finish."
CANCELLED = "Request cancelled"
SCHEDULED_PREFIX = "[SCHEDULED TASK] "
SCHEDULER_SENDER = "Scheduler"
COMPACTED_HEADER = "📝 **Context Compacted**\n\n"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    RESPONDING = "responding"


class EventBus:
    """Named-event pub/sub for observers (HTTP API, tests)."""

    def __init__(self):
        self._handlers: dict[str, list[Callable[[Any], None]]] = defaultdict(list)

    def on(self, event: str, handler: Callable[[Any], None]) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable[[Any], None]) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(payload)
            except Exception:
                log.exception("Event handler for %r failed", event)


def trigger_pattern(name: str) -> re.Pattern:
    """Matches '@Name ...' or 'Name, ...' / 'Name: ...' at the start."""
    escaped = re.escape(name)
    return re.compile(rf"^(?:@{escaped}\b|{escaped}[,:])", re.IGNORECASE)


# Runtime settings persisted in the store
_SETTING_KEYS = (
    "provider", "model", "max_tokens", "assistant_name",
    "anthropic_api_key", "openwebui_api_key", "ollama_url", "openwebui_url",
)


class Orchestrator:
    """Use ``await Orchestrator.create(...)``; the instance is ready on return."""

    def __init__(self, config: Config, store: Store, workspaces: Workspaces,
                 router: Router, runner: AgentRunner | None = None):
        self.config = config
        self.store = store
        self.workspaces = workspaces
        self.router = router
        self.runner = runner or AgentRunner(
            create_default_registry(config.output_truncation), workspaces,
        )
        self.events = EventBus()
        self.state = OrchestratorState.IDLE
        self.token_usage: TokenUsage | None = None

        self._queue: deque[InboundMessage] = deque()
        self._processing = False
        self._worker: asyncio.Task | None = None
        self._pending_scheduled: set[str] = set()
        self._background: set[asyncio.Task] = set()

        self._settings: dict[str, str] = {
            "provider": config.provider,
            "model": config.model,
            "max_tokens": str(config.max_tokens),
            "assistant_name": config.assistant_name,
            "anthropic_api_key": config.credentials["anthropic_api_key"],
            "openwebui_api_key": config.credentials["openwebui_api_key"],
            "ollama_url": config.provider_urls.get("ollama", ""),
            "openwebui_url": config.provider_urls.get("openwebui", ""),
        }
        self._trigger = trigger_pattern(self.assistant_name)

    @classmethod
    async def create(cls, config: Config, store: Store, workspaces: Workspaces,
                     router: Router, runner: AgentRunner | None = None) -> Orchestrator:
        orchestrator = cls(config, store, workspaces, router, runner)
        await orchestrator.init()
        return orchestrator

    async def init(self) -> None:
        stored = self.store.all_settings()
        for key in _SETTING_KEYS:
            if key in stored:
                self._settings[key] = stored[key]
        self._trigger = trigger_pattern(self.assistant_name)

        self.workspaces.for_group(self.primary_group).bootstrap_memory()
        for channel in self.router.channels:
            channel.on_message(self.on_channel_message)

        log.info("Orchestrator ready: provider=%s model=%s configured=%s",
                 self.provider, self.model, self.is_configured())
        self.events.emit("ready", self.status())

    async def shutdown(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

    # ─── Settings ────────────────────────────────────────────────

    @property
    def provider(self) -> str:
        return self._settings["provider"]

    @property
    def model(self) -> str:
        return self._settings["model"]

    @property
    def max_tokens(self) -> int:
        return int(self._settings["max_tokens"])

    @property
    def assistant_name(self) -> str:
        return self._settings["assistant_name"]

    @property
    def primary_group(self) -> str:
        return self.config.primary_group

    @property
    def credentials(self) -> dict[str, str]:
        return {
            "anthropic_api_key": self._settings["anthropic_api_key"],
            "openwebui_api_key": self._settings["openwebui_api_key"],
        }

    @property
    def provider_urls(self) -> dict[str, str]:
        urls = dict(self.config.provider_urls)
        urls["ollama"] = self._settings["ollama_url"]
        urls["openwebui"] = self._settings["openwebui_url"]
        return urls

    def _set(self, key: str, value: str) -> None:
        self._settings[key] = value
        self.store.set_setting(key, value)

    def set_provider(self, provider: str) -> None:
        if provider not in providers.PROVIDERS:
            raise ValueError(f"Unknown provider: {provider!r}")
        self._set("provider", provider)

    def set_model(self, model: str) -> None:
        self._set("model", model)

    def set_max_tokens(self, max_tokens: int) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        self._set("max_tokens", str(max_tokens))

    def set_api_key(self, key: str) -> None:
        self._set("anthropic_api_key", key)

    def set_openwebui_key(self, key: str) -> None:
        self._set("openwebui_api_key", key)

    def set_ollama_url(self, url: str) -> None:
        self._set("ollama_url", url)

    def set_openwebui_url(self, url: str) -> None:
        self._set("openwebui_url", url)

    def set_assistant_name(self, name: str) -> None:
        name = name.strip()
        if not name:
            raise ValueError("Assistant name must not be empty")
        self._set("assistant_name", name)
        self._trigger = trigger_pattern(name)
        for channel in self.router.channels:
            channel.configure(assistant_name=name)

    def is_configured(self) -> bool:
        return providers.is_configured(self.provider, self.credentials, self.provider_urls)

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "processing": self._processing,
            "queued": len(self._queue),
            "provider": self.provider,
            "model": self.model,
            "assistantName": self.assistant_name,
            "configured": self.is_configured(),
            "tokenUsage": self.token_usage.to_dict()["payload"] if self.token_usage else None,
        }

    def _set_state(self, state: OrchestratorState) -> None:
        if state is self.state:
            return
        self.state = state
        self.events.emit("state-change", state.value)

    # ─── Inbound ─────────────────────────────────────────────────

    def on_channel_message(self, msg: InboundMessage) -> None:
        """Channel callback: enqueue in the background."""
        self._spawn(self.enqueue(msg))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Message handling failed: %s", task.exception(),
                      exc_info=task.exception())

    def is_trigger(self, msg: InboundMessage) -> bool:
        if msg.group_id == self.primary_group:
            return True
        if msg.channel in self.config.always_trigger_channels:
            return True
        return bool(self._trigger.match(msg.content.strip()))

    async def enqueue(self, msg: InboundMessage) -> bool:
        """Persist, notify, and queue the message if it triggers. True when queued."""
        triggered = self.is_trigger(msg)
        stored = StoredMessage.from_inbound(msg, is_trigger=triggered)
        self.store.add_message(stored)
        self.events.emit("message", stored)
        if not triggered:
            log.debug("Stored non-trigger message in %s", msg.group_id)
            return False
        self._queue.append(msg)
        await self.process_queue()
        return True

    async def submit_scheduled(self, group_id: str, prompt: str) -> None:
        """Queue a scheduled prompt on the same path as user messages.

        Returns once the message is stored and queued. The agent run
        continues in a background task.
        """
        msg = InboundMessage(
            group_id=group_id,
            sender=SCHEDULER_SENDER,
            content=SCHEDULED_PREFIX + prompt,
            channel=self.router.find_channel(group_id).name,
        )
        stored = StoredMessage.from_inbound(msg, is_trigger=True)
        self.store.add_message(stored)
        self.events.emit("message", stored)
        self._pending_scheduled.add(group_id)
        self._queue.append(msg)
        self._spawn(self.process_queue())

    async def process_queue(self) -> None:
        if self._processing or not self._queue:
            return
        if not self.is_configured():
            msg = self._queue.popleft()
            log.warning("Provider %s not configured, dropping request for %s",
                        self.provider, msg.group_id)
            await self.deliver_response(msg.group_id, f"⚠️ Error: {NOT_CONFIGURED}")
            self.events.emit("error", {"groupId": msg.group_id, "error": NOT_CONFIGURED})
            return

        self._processing = True
        try:
            while self._queue:
                msg = self._queue.popleft()
                await self.invoke_agent(msg.group_id, msg.content)
        finally:
            self._processing = False
            self._set_state(OrchestratorState.IDLE)

    # ─── Agent invocation ────────────────────────────────────────

    def _request_fields(self, group_id: str) -> dict[str, Any]:
        workspace = self.workspaces.for_group(group_id)
        try:
            memory = workspace.read_memory()
        except OSError as e:
            log.warning("Cannot read memory for %s: %s", group_id, e)
            memory = None
        history = build_conversation(self.store.get_recent_messages(group_id))
        return {
            "group_id": group_id,
            "messages": [m.to_internal() for m in history],
            "system_prompt": build_system_prompt(
                self.assistant_name, self.runner.tools.get_brief_descriptions(), memory,
            ),
            "model": self.model,
            "max_tokens": self.max_tokens,
            "provider": self.provider,
            "credentials": self.credentials,
            "provider_urls": self.provider_urls,
        }

    async def _begin(self, group_id: str) -> None:
        self._set_state(OrchestratorState.THINKING)
        self.events.emit("typing", {"groupId": group_id, "typing": True})
        await self.router.set_typing(group_id, True)

    async def invoke_agent(self, group_id: str, content: str) -> None:
        log.info("Invoking agent for %s: %.80s", group_id, content)
        await self._begin(group_id)
        await self._run_worker(Invoke(**self._request_fields(group_id)))

    async def _run_worker(self, request: Invoke | Compact) -> bool:
        """Run one request in its own task and handle its outbound messages in order.

        Returns False when the request was cancelled.
        """
        outbox: asyncio.Queue[WorkerOutbound] = asyncio.Queue()
        task = asyncio.create_task(self.runner.run(request, outbox.put_nowait))
        self._worker = task
        try:
            while not (task.done() and outbox.empty()):
                getter = asyncio.ensure_future(outbox.get())
                await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter.done():
                    await self._handle_worker_message(getter.result())
                else:
                    getter.cancel()
        finally:
            self._worker = None

        if task.cancelled():
            log.info("Request for %s cancelled", request.group_id)
            self.events.emit("error", {"groupId": request.group_id, "error": CANCELLED})
            self.events.emit("typing", {"groupId": request.group_id, "typing": False})
            await self.router.set_typing(request.group_id, False)
            self._set_state(OrchestratorState.IDLE)
            return False
        task.result()
        return True

    async def cancel(self) -> bool:
        """Abort the in-flight request. True when something was running."""
        if self._worker is None or self._worker.done():
            return False
        await self.runner.run(Cancel(), lambda _msg: None)
        return True

    async def _handle_worker_message(self, msg: WorkerOutbound) -> None:
        if isinstance(msg, Typing):
            self.events.emit("typing", {"groupId": msg.group_id, "typing": True})
            await self.router.set_typing(msg.group_id, True)
        elif isinstance(msg, TokenUsage):
            self.token_usage = msg
            self.events.emit("token-usage", msg.to_dict()["payload"])
        elif isinstance(msg, ToolActivity):
            self.events.emit("tool-activity", msg.to_dict()["payload"])
        elif isinstance(msg, ThinkingLog):
            log.debug("[%s] %s %s", msg.group_id, msg.label, msg.detail or "")
            self.events.emit("thinking-log", msg.to_dict()["payload"])
        elif isinstance(msg, Response):
            self._set_state(OrchestratorState.RESPONDING)
            await self.deliver_response(msg.group_id, msg.text)
        elif isinstance(msg, Error):
            log.error("Agent error for %s: %s", msg.group_id, msg.error)
            self._pending_scheduled.discard(msg.group_id)
            await self.deliver_response(msg.group_id, f"⚠️ Error: {msg.error}")
            self.events.emit("error", {"groupId": msg.group_id, "error": msg.error})
        elif isinstance(msg, TaskCreated):
            task = Task.from_dict(msg.task)
            self.store.save_task(task)
            log.info("Task %s created for %s: %s", task.id, task.group_id, task.schedule)
            self.events.emit("task-created", task.to_dict())
        elif isinstance(msg, CompactDone):
            self._apply_compaction(msg.group_id, msg.summary)
            self.events.emit("typing", {"groupId": msg.group_id, "typing": False})
            await self.router.set_typing(msg.group_id, False)
            self._set_state(OrchestratorState.IDLE)
        else:
            assert_never(msg)

    # ─── Delivery ────────────────────────────────────────────────

    async def _post_assistant_message(self, group_id: str, text: str) -> StoredMessage:
        stored = StoredMessage(
            id=new_message_id(),
            group_id=group_id,
            sender=self.assistant_name,
            content=text,
            timestamp=now_ms(),
            channel=self.router.find_channel(group_id).name,
            is_from_me=True,
        )
        self.store.add_message(stored)
        try:
            await self.router.send(group_id, text)
        except DeliveryError as e:
            log.error("Delivery to %s failed: %s", group_id, e)
        self.events.emit("message", stored)
        return stored

    async def deliver_response(self, group_id: str, text: str) -> None:
        await self._post_assistant_message(group_id, text)
        self.events.emit("typing", {"groupId": group_id, "typing": False})
        await self.router.set_typing(group_id, False)
        if group_id in self._pending_scheduled:
            self._pending_scheduled.discard(group_id)
            self.events.emit("scheduled-response", {"groupId": group_id})
        self._set_state(OrchestratorState.IDLE)

    # ─── Conversation management ─────────────────────────────────

    async def new_session(self, group_id: str) -> None:
        removed = self.store.clear_messages(group_id)
        log.info("New session for %s (%d messages cleared)", group_id, removed)
        self.events.emit("session-reset", {"groupId": group_id})

    async def compact_context(self, group_id: str) -> bool:
        """Replace the group's history with a model summary. False when rejected or cancelled."""
        if not self.is_configured():
            await self._reject(group_id, COMPACT_NOT_CONFIGURED)
            return False
        if self._processing or self.state is not OrchestratorState.IDLE:
            await self._reject(group_id, COMPACT_BUSY)
            return False

        self._processing = True
        try:
            await self._begin(group_id)
            completed = await self._run_worker(Compact(**self._request_fields(group_id)))
        finally:
            self._processing = False
            self._set_state(OrchestratorState.IDLE)
        await self.process_queue()
        return completed

    async def _reject(self, group_id: str, reason: str) -> None:
        """Tell the user a request was refused without touching the state machine."""
        await self._post_assistant_message(group_id, f"⚠️ Error: {reason}")
        self.events.emit("error", {"groupId": group_id, "error": reason})

    def _apply_compaction(self, group_id: str, summary: str) -> None:
        self.store.clear_messages(group_id)
        stored = StoredMessage(
            id=new_message_id(),
            group_id=group_id,
            sender=self.assistant_name,
            content=COMPACTED_HEADER + summary,
            timestamp=now_ms(),
            channel=self.router.find_channel(group_id).name,
            is_from_me=True,
        )
        self.store.add_message(stored)
        log.info("Compacted %s to %d chars", group_id, len(summary))
        self.events.emit("context-compacted", {"groupId": group_id, "summary": summary})

    # ─── Tasks ───────────────────────────────────────────────────

    def create_task(self, group_id: str, schedule: str, prompt: str) -> Task:
        task = Task(group_id=group_id, schedule=schedule, prompt=prompt)
        self.store.save_task(task)
        self.events.emit("task-created", task.to_dict())
        return task

    def toggle_task(self, task_id: str) -> Task | None:
        task = self.store.get_task(task_id)
        if task is None:
            return None
        task.enabled = not task.enabled
        self.store.save_task(task)
        return task

    def delete_task(self, task_id: str) -> bool:
        return self.store.delete_task(task_id)

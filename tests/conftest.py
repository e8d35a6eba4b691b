"""Shared fixtures for the Clawd test suite.

All tests use temporary directories and mock objects.
Nothing touches ~/.clawd/ or the network.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))

from config import Config  # noqa: E402
from providers import LLMResponse, ToolCall, Usage  # noqa: E402
from store import Store  # noqa: E402
from workspace import Workspaces  # noqa: E402

# ─── Mocks ───────────────────────────────────────────────────────


class MockProvider:
    """Returns pre-configured LLMResponse objects in sequence."""

    def __init__(self, responses: list[LLMResponse], model: str = "claude-test",
                 summary: str = "Summary of the conversation."):
        self._responses = list(responses)
        self.model = model
        self.summary = summary
        self.calls: list[list[dict]] = []
        self.summarize_calls = 0

    def format_tools(self, tools):
        return tools

    def format_system(self, text):
        return text

    def format_messages(self, messages):
        return list(messages)

    async def complete(self, system, messages, tools, **kwargs):
        self.calls.append(messages)
        idx = min(len(self.calls) - 1, len(self._responses) - 1)
        return self._responses[idx]

    async def summarize(self, system, messages, max_tokens):
        self.summarize_calls += 1
        return self.summary


class GatedProvider(MockProvider):
    """Blocks every complete() until released; tracks concurrency."""

    def __init__(self, responses, **kwargs):
        super().__init__(responses, **kwargs)
        self.gate = asyncio.Event()
        self.active = 0
        self.max_active = 0
        self.entered = asyncio.Event()

    async def complete(self, system, messages, tools, **kwargs):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.entered.set()
        try:
            await self.gate.wait()
            return await super().complete(system, messages, tools, **kwargs)
        finally:
            self.active -= 1


class RecordingChannel:
    """Channel that records sends and typing changes."""

    def __init__(self, name: str = "local", prefix: str = "local:"):
        self.name = name
        self.prefix = prefix
        self.sent: list[tuple[str, str]] = []
        self.typing: list[tuple[str, bool]] = []
        self.callback = None

    def configure(self, **credentials):
        pass

    async def start(self):
        pass

    async def stop(self):
        pass

    def is_configured(self):
        return True

    def on_message(self, callback):
        self.callback = callback

    async def send(self, group_id, text):
        self.sent.append((group_id, text))

    async def set_typing(self, group_id, typing):
        self.typing.append((group_id, typing))


def end_turn(text="Done", input_tokens=100, output_tokens=50):
    return LLMResponse(
        text=text,
        tool_calls=[],
        stop_reason="end_turn",
        usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def tool_use(name="echo", arguments=None, call_id="tc-1", text=None):
    return LLMResponse(
        text=text,
        tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments or {"text": "hi"})],
        stop_reason="tool_use",
        usage=Usage(input_tokens=100, output_tokens=50),
    )


# ─── Fixtures ────────────────────────────────────────────────────


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path / "clawd.db")
    yield s
    s.close()


@pytest.fixture
def workspaces(tmp_path):
    return Workspaces(tmp_path / "workspace")


@pytest.fixture
def workspace(workspaces):
    ws = workspaces.for_group("local:main")
    ws.ensure()
    return ws


@pytest.fixture
def config_data():
    """Minimal config with an Anthropic key so the provider counts as configured."""
    return {
        "assistant": {"name": "Andy"},
        "provider": {"name": "anthropic", "model": "claude-test", "max_tokens": 1024},
        "api_keys": {"anthropic": "sk-test"},
    }


@pytest.fixture
def config(config_data, tmp_path, monkeypatch):
    for var in ("CLAWD_ANTHROPIC_KEY", "CLAWD_OPENWEBUI_KEY", "CLAWD_HTTP_TOKEN",
                "CLAWD_TELEGRAM_TOKEN", "CLAWD_WHATSAPP_TOKEN", "CLAWD_WHATSAPP_VERIFY_TOKEN"):
        monkeypatch.delenv(var, raising=False)
    return Config(config_data, config_dir=tmp_path)

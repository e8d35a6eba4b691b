"""LLM Provider interface and shared types.

Defines the contract between the agent runner and any LLM backend.
Provider-specific request/response shapes are handled inside
implementations, not in the interface.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

log = logging.getLogger(__name__)

PROVIDERS = ("anthropic", "ollama", "openwebui")

CLAUDE_CONTEXT_LIMIT = 200_000
DEFAULT_CONTEXT_LIMIT = 128_000


class ProviderError(Exception):
    """The backend rejected a request or could not be reached."""


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0


@dataclass
class LLMResponse:
    text: str | None
    tool_calls: list[ToolCall]
    stop_reason: str  # "end_turn" | "tool_use" | "max_tokens"
    usage: Usage | None = None
    raw: Any = None

    def to_internal_message(self) -> dict:
        """Convert to the internal assistant-turn format."""
        msg: dict[str, Any] = {"role": "assistant"}
        if self.text:
            msg["text"] = self.text
        if self.tool_calls:
            msg["tool_calls"] = [
                {"id": tc.id, "name": tc.name, "arguments": tc.arguments}
                for tc in self.tool_calls
            ]
        return msg


class LLMProvider(Protocol):
    """Protocol for LLM provider implementations.

    Internal message format:
        {"role": "user", "content": str}
        {"role": "assistant", "text": str, "tool_calls": [{id, name, arguments}]}
        {"role": "tool_results", "results": [{tool_call_id, content}]}
    """

    model: str

    def format_tools(self, tools: list[dict]) -> list[dict]:
        """Convert generic tool schemas to provider-specific format."""
        ...

    def format_system(self, text: str) -> Any:
        """Convert the system prompt to provider format."""
        ...

    def format_messages(self, messages: list[dict]) -> list[dict]:
        """Convert internal message format to provider's API format."""
        ...

    async def complete(
        self, system: Any, messages: list[dict], tools: list[dict], **kwargs
    ) -> LLMResponse:
        """Send to LLM, return normalized response."""
        ...

    async def summarize(self, system: str, messages: list[dict], max_tokens: int) -> str:
        """Tool-free completion used for context compaction."""
        ...


def context_limit(model: str) -> int:
    """Context-window ceiling reported with token usage."""
    return CLAUDE_CONTEXT_LIMIT if "claude" in model.lower() else DEFAULT_CONTEXT_LIMIT


def is_configured(provider: str, credentials: dict[str, str],
                  provider_urls: dict[str, str]) -> bool:
    if provider == "ollama":
        return True
    if provider == "openwebui":
        return bool(credentials.get("openwebui_api_key") and provider_urls.get("openwebui"))
    if provider == "anthropic":
        return bool(credentials.get("anthropic_api_key"))
    return False


def create_provider(provider: str, model: str, max_tokens: int,
                    credentials: dict[str, str] | None = None,
                    provider_urls: dict[str, str] | None = None) -> LLMProvider:
    """Factory: create provider from the selector and its settings."""
    credentials = credentials or {}
    provider_urls = provider_urls or {}

    if provider == "anthropic":
        from .anthropic_compat import AnthropicProvider
        return AnthropicProvider(
            api_key=credentials.get("anthropic_api_key", ""),
            model=model,
            max_tokens=max_tokens,
            base_url=provider_urls.get("anthropic", ""),
        )
    if provider == "openwebui":
        from .openai_compat import OpenWebUIProvider
        return OpenWebUIProvider(
            api_key=credentials.get("openwebui_api_key", ""),
            model=model,
            max_tokens=max_tokens,
            base_url=provider_urls.get("openwebui", ""),
        )
    if provider == "ollama":
        from .ollama import OllamaProvider
        return OllamaProvider(
            model=model,
            max_tokens=max_tokens,
            base_url=provider_urls.get("ollama", ""),
        )
    raise ValueError(f"Unknown provider: {provider!r}")

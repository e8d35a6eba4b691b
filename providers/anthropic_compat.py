"""Anthropic provider.

Messages API through the official SDK, with prompt caching on the system
prompt. SDK calls are synchronous and run in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import anthropic

from . import LLMResponse, ProviderError, ToolCall, Usage

log = logging.getLogger(__name__)


def _safe_parse_args(raw: Any) -> dict:
    """Parse tool input, handling both dict and string forms."""
    if isinstance(raw, dict):
        return raw
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {"raw": raw}


class AnthropicProvider:
    def __init__(self, api_key: str, model: str, max_tokens: int = 4096, base_url: str = ""):
        if base_url:
            self.client = anthropic.Anthropic(api_key=api_key, base_url=base_url)
        else:
            self.client = anthropic.Anthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens

    def format_tools(self, tools: list[dict]) -> list[dict]:
        return [
            {
                "name": t["name"],
                "description": t["description"],
                "input_schema": t["input_schema"],
            }
            for t in tools
        ]

    def format_system(self, text: str) -> list[dict]:
        return [{"type": "text", "text": text, "cache_control": {"type": "ephemeral"}}]

    def format_messages(self, messages: list[dict]) -> list[dict]:
        """Convert internal format to Anthropic API format."""
        result = []
        for msg in messages:
            role = msg.get("role", "")

            if role == "user":
                result.append({"role": "user", "content": msg.get("content", "")})

            elif role == "assistant":
                content_blocks: list[dict] = []
                if msg.get("text"):
                    content_blocks.append({"type": "text", "text": msg["text"]})
                for tc in msg.get("tool_calls", []):
                    content_blocks.append({
                        "type": "tool_use",
                        "id": tc["id"],
                        "name": tc["name"],
                        "input": tc["arguments"],
                    })
                if content_blocks:
                    result.append({"role": "assistant", "content": content_blocks})

            elif role == "tool_results":
                tool_content = [
                    {
                        "type": "tool_result",
                        "tool_use_id": r["tool_call_id"],
                        "content": r["content"],
                    }
                    for r in msg.get("results", [])
                ]
                if tool_content:
                    result.append({"role": "user", "content": tool_content})

        return result

    async def complete(
        self, system: Any, messages: list[dict], tools: list[dict], **kwargs
    ) -> LLMResponse:
        """Call Anthropic Messages API."""
        params: dict[str, Any] = {
            "model": self.model,
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
            "system": system,
            "messages": messages,
        }
        if tools:
            params["tools"] = tools

        try:
            response = await asyncio.to_thread(self.client.messages.create, **params)
        except anthropic.APIStatusError as e:
            raise ProviderError(f"Anthropic API error {e.status_code}: {e.message}") from e
        except anthropic.APIError as e:
            raise ProviderError(f"Anthropic API error: {e}") from e

        text_parts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.id,
                    name=block.name,
                    arguments=_safe_parse_args(block.input),
                ))

        usage = Usage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            cache_read_tokens=getattr(response.usage, "cache_read_input_tokens", 0) or 0,
            cache_creation_tokens=getattr(response.usage, "cache_creation_input_tokens", 0) or 0,
        )

        stop = "end_turn"
        if response.stop_reason == "tool_use":
            stop = "tool_use"
        elif response.stop_reason == "max_tokens":
            stop = "max_tokens"

        return LLMResponse(
            text="".join(text_parts) if text_parts else None,
            tool_calls=tool_calls,
            stop_reason=stop,
            usage=usage,
            raw=response,
        )

    async def summarize(self, system: str, messages: list[dict], max_tokens: int) -> str:
        response = await self.complete(
            self.format_system(system), self.format_messages(messages), [],
            max_tokens=max_tokens,
        )
        return (response.text or "").strip()

"""OpenWebUI provider.

Self-hosted gateway exposing the OpenAI chat-completions API under
``<url>/api``. Talks through the OpenAI SDK with the gateway's bearer key.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import openai

from . import LLMResponse, ProviderError, ToolCall, Usage

log = logging.getLogger(__name__)


def api_base(url: str) -> str:
    """'http://host:3000/' → 'http://host:3000/api'."""
    url = url.rstrip("/")
    return url if url.endswith("/api") else f"{url}/api"


class OpenWebUIProvider:
    def __init__(self, api_key: str, model: str, max_tokens: int = 4096, base_url: str = ""):
        if not base_url:
            raise ValueError("OpenWebUI provider requires a base URL")
        self.client = openai.OpenAI(api_key=api_key or "not-needed", base_url=api_base(base_url))
        self.model = model
        self.max_tokens = max_tokens

    def format_tools(self, tools: list[dict]) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t["description"],
                    "parameters": t["input_schema"],
                },
            }
            for t in tools
        ]

    def format_system(self, text: str) -> str:
        return text

    def format_messages(self, messages: list[dict]) -> list[dict]:
        """Convert internal format to OpenAI API format."""
        result = []
        for msg in messages:
            role = msg.get("role", "")

            if role == "user":
                result.append({"role": "user", "content": msg.get("content", "")})

            elif role == "assistant":
                entry: dict[str, Any] = {"role": "assistant"}
                text = msg.get("text", "")
                tool_calls_raw = msg.get("tool_calls", [])
                entry["content"] = text or ""
                if tool_calls_raw:
                    entry["tool_calls"] = [
                        {
                            "id": tc["id"],
                            "type": "function",
                            "function": {
                                "name": tc["name"],
                                "arguments": json.dumps(tc["arguments"])
                                    if isinstance(tc["arguments"], dict)
                                    else tc["arguments"],
                            },
                        }
                        for tc in tool_calls_raw
                    ]
                result.append(entry)

            elif role == "tool_results":
                for r in msg.get("results", []):
                    result.append({
                        "role": "tool",
                        "tool_call_id": r["tool_call_id"],
                        "content": r["content"],
                    })

        return result

    async def complete(
        self, system: Any, messages: list[dict], tools: list[dict], **kwargs
    ) -> LLMResponse:
        """Call the chat completions endpoint."""
        api_messages = []
        if system:
            api_messages.append({"role": "system", "content": system})
        api_messages.extend(messages)

        params: dict[str, Any] = {
            "model": self.model,
            "messages": api_messages,
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
        }
        if tools:
            params["tools"] = tools

        try:
            response = await asyncio.to_thread(self.client.chat.completions.create, **params)
        except openai.APIStatusError as e:
            raise ProviderError(f"OpenWebUI API error {e.status_code}: {e.message}") from e
        except openai.APIError as e:
            raise ProviderError(f"OpenWebUI API error: {e}") from e

        if not response.choices:
            raise ProviderError("OpenWebUI API error: response has no choices")
        choice = response.choices[0]
        message = choice.message

        tool_calls = []
        for tc in message.tool_calls or []:
            args = tc.function.arguments
            if isinstance(args, str):
                try:
                    args = json.loads(args) if args else {}
                except json.JSONDecodeError:
                    args = {"raw": args}
            tool_calls.append(ToolCall(id=tc.id, name=tc.function.name, arguments=args))

        u = response.usage
        usage = None
        if u is not None:
            usage = Usage(input_tokens=u.prompt_tokens or 0, output_tokens=u.completion_tokens or 0)

        stop = "end_turn"
        if choice.finish_reason == "tool_calls" or tool_calls:
            stop = "tool_use"
        elif choice.finish_reason == "length":
            stop = "max_tokens"

        return LLMResponse(
            text=message.content,
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

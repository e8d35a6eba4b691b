"""Ollama provider.

Local model server, native ``/api/chat`` endpoint (non-streaming) via httpx.
Ollama does not assign tool-call ids, so they are synthesized here.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any

import httpx

from . import LLMResponse, ProviderError, ToolCall, Usage

log = logging.getLogger(__name__)

DEFAULT_URL = "http://localhost:11434"
_TIMEOUT = httpx.Timeout(300.0, connect=10.0)


def clean_url(url: str) -> str:
    """Strip a pasted listing endpoint: 'http://h:11434/api/tags' → 'http://h:11434'."""
    url = (url or DEFAULT_URL).strip().rstrip("/")
    return re.sub(r"/api(/(tags|models))?$", "", url)


class OllamaProvider:
    def __init__(self, model: str, max_tokens: int = 4096, base_url: str = "",
                 client: httpx.AsyncClient | None = None):
        self.base_url = clean_url(base_url)
        self.model = model
        self.max_tokens = max_tokens
        self._client = client

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
        """Internal format → Ollama chat messages (object-valued tool arguments)."""
        result = []
        names: dict[str, str] = {}
        for msg in messages:
            role = msg.get("role", "")
            if role == "user":
                result.append({"role": "user", "content": msg.get("content", "")})
            elif role == "assistant":
                entry: dict[str, Any] = {"role": "assistant", "content": msg.get("text", "")}
                if msg.get("tool_calls"):
                    entry["tool_calls"] = [
                        {"function": {"name": tc["name"], "arguments": tc["arguments"]}}
                        for tc in msg["tool_calls"]
                    ]
                    names.update({tc["id"]: tc["name"] for tc in msg["tool_calls"]})
                result.append(entry)
            elif role == "tool_results":
                for r in msg.get("results", []):
                    tool_msg = {"role": "tool", "content": r["content"]}
                    if r["tool_call_id"] in names:
                        tool_msg["tool_name"] = names[r["tool_call_id"]]
                    result.append(tool_msg)
        return result

    async def _post(self, body: dict) -> dict:
        url = f"{self.base_url}/api/chat"
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=body)
            else:
                async with httpx.AsyncClient(timeout=_TIMEOUT) as client:
                    resp = await client.post(url, json=body)
        except httpx.HTTPError as e:
            raise ProviderError(f"Ollama request to {url} failed: {e}") from e
        if resp.status_code >= 400:
            raise ProviderError(f"Ollama API error {resp.status_code}: {resp.text[:500]}")
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError("Ollama API error: non-JSON response") from e

    async def complete(
        self, system: Any, messages: list[dict], tools: list[dict], **kwargs
    ) -> LLMResponse:
        api_messages = []
        if system:
            api_messages.append({"role": "system", "content": system})
        api_messages.extend(messages)

        body: dict[str, Any] = {
            "model": self.model,
            "messages": api_messages,
            "stream": False,
            "options": {"num_predict": kwargs.get("max_tokens", self.max_tokens)},
        }
        if tools:
            body["tools"] = tools

        data = await self._post(body)
        message = data.get("message") or {}

        tool_calls = []
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function", {})
            args = fn.get("arguments", {})
            if isinstance(args, str):
                try:
                    args = json.loads(args) if args else {}
                except json.JSONDecodeError:
                    args = {"raw": args}
            tool_calls.append(ToolCall(
                id=tc.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                name=fn.get("name", ""),
                arguments=args,
            ))

        usage = None
        if "prompt_eval_count" in data or "eval_count" in data:
            usage = Usage(
                input_tokens=data.get("prompt_eval_count", 0) or 0,
                output_tokens=data.get("eval_count", 0) or 0,
            )

        stop = "end_turn"
        if tool_calls:
            stop = "tool_use"
        elif data.get("done_reason") == "length":
            stop = "max_tokens"

        return LLMResponse(
            text=message.get("content") or None,
            tool_calls=tool_calls,
            stop_reason=stop,
            usage=usage,
            raw=data,
        )

    async def summarize(self, system: str, messages: list[dict], max_tokens: int) -> str:
        response = await self.complete(
            self.format_system(system), self.format_messages(messages), [],
            max_tokens=max_tokens,
        )
        return (response.text or "").strip()

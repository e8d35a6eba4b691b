"""Messages exchanged between the orchestrator and an agent runner.

Each variant is a dataclass with a ``type`` tag. ``to_dict()`` renders the
wire form ``{"type": ..., "payload": {...}}`` with camelCase payload keys;
``decode_inbound()`` / ``decode_outbound()`` rebuild variants and reject
unknown tags.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Literal, Union


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


class _Wire:
    type: ClassVar[str]

    def to_dict(self) -> dict[str, Any]:
        payload = {_camel(f.name): getattr(self, f.name) for f in fields(self)}  # type: ignore[arg-type]
        return {"type": self.type, "payload": payload}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]):
        kwargs = {}
        for f in fields(cls):  # type: ignore[arg-type]
            key = _camel(f.name)
            if key in payload:
                kwargs[f.name] = payload[key]
        return cls(**kwargs)


# ─── Orchestrator → runner ──────────────────────────────────────

@dataclass
class _AgentRequest(_Wire):
    group_id: str
    messages: list[dict]
    system_prompt: str
    model: str
    max_tokens: int
    provider: str
    credentials: dict[str, str] = field(default_factory=dict)
    provider_urls: dict[str, str] = field(default_factory=dict)


@dataclass
class Invoke(_AgentRequest):
    type: ClassVar[str] = "invoke"


@dataclass
class Compact(_AgentRequest):
    type: ClassVar[str] = "compact"


@dataclass
class Cancel(_Wire):
    type: ClassVar[str] = "cancel"


# ─── Runner → orchestrator ──────────────────────────────────────

@dataclass
class Typing(_Wire):
    type: ClassVar[str] = "typing"
    group_id: str


@dataclass
class TokenUsage(_Wire):
    type: ClassVar[str] = "token-usage"
    group_id: str
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int
    cache_creation_tokens: int
    context_limit: int


@dataclass
class ToolActivity(_Wire):
    type: ClassVar[str] = "tool-activity"
    group_id: str
    tool: str
    status: Literal["running", "done"]


@dataclass
class ThinkingLog(_Wire):
    type: ClassVar[str] = "thinking-log"
    group_id: str
    kind: Literal["info", "api-call", "tool-call", "tool-result", "text"]
    timestamp: int
    label: str
    detail: str | None = None


@dataclass
class Response(_Wire):
    type: ClassVar[str] = "response"
    group_id: str
    text: str


@dataclass
class Error(_Wire):
    type: ClassVar[str] = "error"
    group_id: str
    error: str


@dataclass
class TaskCreated(_Wire):
    type: ClassVar[str] = "task-created"
    task: dict[str, Any]


@dataclass
class CompactDone(_Wire):
    type: ClassVar[str] = "compact-done"
    group_id: str
    summary: str


WorkerInbound = Union[Invoke, Compact, Cancel]
WorkerOutbound = Union[
    Typing, TokenUsage, ToolActivity, ThinkingLog, Response, Error, TaskCreated, CompactDone,
]

_INBOUND: dict[str, type] = {c.type: c for c in (Invoke, Compact, Cancel)}
_OUTBOUND: dict[str, type] = {
    c.type: c for c in (
        Typing, TokenUsage, ToolActivity, ThinkingLog, Response, Error, TaskCreated, CompactDone,
    )
}


def _decode(data: dict[str, Any], table: dict[str, type], direction: str):
    kind = data.get("type")
    cls = table.get(kind)  # type: ignore[arg-type]
    if cls is None:
        raise ValueError(f"Unknown {direction} message type: {kind!r}")
    return cls.from_payload(data.get("payload") or {})


def decode_inbound(data: dict[str, Any]) -> WorkerInbound:
    return _decode(data, _INBOUND, "inbound")


def decode_outbound(data: dict[str, Any]) -> WorkerOutbound:
    return _decode(data, _OUTBOUND, "outbound")

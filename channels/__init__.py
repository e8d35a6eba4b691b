"""Channel interface and shared types.

Defines the contract between the orchestrator and messaging transports.
Each channel delivers inbound messages through a registered callback and
sends outbound text for the conversations it owns.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class InboundMessage:
    group_id: str         # Namespaced conversation key: "local:main", "tg:123", "wa:4915..."
    sender: str           # Display name, phone number, "Scheduler", ...
    content: str
    channel: str          # "local", "telegram", "whatsapp"
    id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=_now_ms)  # epoch ms


MessageCallback = Callable[[InboundMessage], None]


class Channel(Protocol):
    name: str
    prefix: str

    def configure(self, **credentials: str) -> None: ...
    async def start(self) -> None: ...
    async def stop(self) -> None: ...
    def is_configured(self) -> bool: ...
    def on_message(self, callback: MessageCallback) -> None: ...
    async def send(self, group_id: str, text: str) -> None: ...
    async def set_typing(self, group_id: str, typing: bool) -> None: ...


def chunk_text(text: str, limit: int) -> list[str]:
    """Split text on newline boundaries within a character limit."""
    if len(text) <= limit:
        return [text]

    chunks = []
    current = ""
    for line in text.split("\n"):
        if current and len(current) + len(line) + 1 > limit:
            chunks.append(current)
            current = line
        else:
            current = current + "\n" + line if current else line

    if current:
        while len(current) > limit:
            chunks.append(current[:limit])
            current = current[limit:]
        if current:
            chunks.append(current)

    return chunks

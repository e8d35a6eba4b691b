"""Local channel — stdin/stdout, the primary in-app conversation.

Always configured. Messages typed on the terminal and messages submitted
through the HTTP API both land in the ``local:main`` group.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TextIO

from . import InboundMessage, MessageCallback

log = logging.getLogger(__name__)

PREFIX = "local:"
DEFAULT_GROUP = "local:main"


class LocalChannel:
    name = "local"
    prefix = PREFIX

    def __init__(self, assistant_name: str = "Andy", interactive: bool = True,
                 output: TextIO | None = None):
        self.assistant_name = assistant_name
        self.interactive = interactive
        self._output = output or sys.stdout
        self._callback: MessageCallback | None = None
        self._reader: asyncio.Task | None = None

    def configure(self, **credentials: str) -> None:
        if credentials.get("assistant_name"):
            self.assistant_name = credentials["assistant_name"]

    def is_configured(self) -> bool:
        return True

    def on_message(self, callback: MessageCallback) -> None:
        self._callback = callback

    async def start(self) -> None:
        if self.interactive and self._reader is None:
            self._reader = asyncio.create_task(self._read_stdin())

    async def stop(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None

    def submit(self, content: str, group_id: str = DEFAULT_GROUP,
               sender: str = "You") -> InboundMessage:
        """Inject a message as if typed locally. Returns the message."""
        if not group_id.startswith(PREFIX):
            group_id = PREFIX + group_id
        msg = InboundMessage(
            group_id=group_id,
            sender=sender,
            content=content,
            channel=self.name,
        )
        if self._callback is None:
            log.warning("Local message dropped, no receiver registered")
        else:
            self._callback(msg)
        return msg

    async def _read_stdin(self) -> None:
        while True:
            try:
                text = await asyncio.to_thread(input, "You> ")
            except (EOFError, KeyboardInterrupt):
                log.info("Local input closed")
                return
            if not text.strip():
                continue
            self.submit(text)

    async def send(self, group_id: str, text: str) -> None:
        if text:
            print(f"{self.assistant_name}> {text}", file=self._output, flush=True)

    async def set_typing(self, group_id: str, typing: bool) -> None:
        log.debug("Typing %s for %s", "on" if typing else "off", group_id)

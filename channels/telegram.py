"""Telegram channel via Bot API (long polling).

Inbound: getUpdates long polling (httpx async).
Outbound: Bot API HTTP calls (httpx async).
Every chat maps to the group ``tg:<chat_id>``.
"""

from __future__ import annotations

import asyncio
import logging
import random

import httpx

from . import InboundMessage, MessageCallback, chunk_text

log = logging.getLogger(__name__)

PREFIX = "tg:"

# Reconnect policy: 1s initial -> 10s max, factor 2, 20% jitter
_RECONNECT_INITIAL = 1.0
_RECONNECT_MAX = 10.0
_RECONNECT_FACTOR = 2.0
_RECONNECT_JITTER = 0.2

# Telegram Bot API base URL
_API_BASE = "https://api.telegram.org/bot{token}"


class TelegramError(RuntimeError):
    """Bot API returned ok=false or an unreadable response."""


class TelegramChannel:
    name = "telegram"
    prefix = PREFIX

    def __init__(
        self,
        token: str = "",
        allow_from: list[int] | None = None,
        chunk_limit: int = 4000,
        poll_timeout: int = 30,
    ):
        self.token = token
        self.allow_from = set(allow_from) if allow_from else set()
        self.chunk_limit = chunk_limit
        self.poll_timeout = poll_timeout

        self._bot_id: int = 0
        self._bot_username: str = ""
        self._offset: int = 0  # getUpdates offset
        self._callback: MessageCallback | None = None
        self._poller: asyncio.Task | None = None
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return _API_BASE.format(token=self.token)

    def configure(self, **credentials: str) -> None:
        if "token" in credentials:
            self.token = credentials["token"]

    def is_configured(self) -> bool:
        return bool(self.token)

    def on_message(self, callback: MessageCallback) -> None:
        self._callback = callback

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
        return self._client

    async def _api(self, method: str, **params) -> dict | list:
        """Call Telegram Bot API method."""
        client = await self._get_client()
        resp = await client.post(f"{self.base_url}/{method}", json=params)

        # Telegram returns error descriptions even on 4xx, read the body first
        try:
            data = resp.json()
        except ValueError as exc:
            raise TelegramError(
                f"Telegram API error ({method}): non-JSON response {resp.status_code}"
            ) from exc

        if not data.get("ok"):
            desc = data.get("description", f"HTTP {resp.status_code}")
            raise TelegramError(f"Telegram API error ({method}): {desc}")

        return data.get("result", {})

    async def start(self) -> None:
        """Verify bot token and start the polling task."""
        if not self.is_configured():
            log.info("Telegram not configured, channel idle")
            return
        if self._poller is not None:
            return
        me = await self._api("getMe")
        self._bot_id = me.get("id", 0)
        self._bot_username = me.get("username", "")
        log.info("Telegram bot connected: @%s (id=%d)", self._bot_username, self._bot_id)
        self._poller = asyncio.create_task(self._receive())

    async def stop(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _receive(self) -> None:
        """Long-polling loop. Auto-reconnects on failure."""
        backoff = _RECONNECT_INITIAL
        while True:
            try:
                await self._poll_once()
                backoff = _RECONNECT_INITIAL
            except asyncio.CancelledError:
                return
            except (httpx.HTTPError, TelegramError) as e:
                jitter = backoff * _RECONNECT_JITTER * (random.random() * 2 - 1)  # noqa: S311
                wait = backoff + jitter
                log.warning("Telegram poll failed (%s), reconnecting in %.1fs", e, wait)
                await asyncio.sleep(wait)
                backoff = min(backoff * _RECONNECT_FACTOR, _RECONNECT_MAX)

    async def _poll_once(self) -> None:
        updates = await self._api(
            "getUpdates",
            offset=self._offset,
            timeout=self.poll_timeout,
            allowed_updates=["message"],
        )
        for update in updates:
            update_id = update.get("update_id", 0)
            if update_id >= self._offset:
                self._offset = update_id + 1

            message = update.get("message")
            if not message:
                continue
            parsed = self.parse_message(message)
            if parsed is not None and self._callback is not None:
                self._callback(parsed)

    def parse_message(self, message: dict) -> InboundMessage | None:
        """Parse a Telegram message dict into InboundMessage, or None to skip."""
        from_user = message.get("from", {})
        user_id = from_user.get("id", 0)
        chat_id = message.get("chat", {}).get("id", 0)

        if user_id == self._bot_id:
            return None
        if self.allow_from and user_id not in self.allow_from:
            log.debug("Ignoring message from non-allowed user: %d", user_id)
            return None

        text = message.get("text", "") or message.get("caption", "") or ""
        if not text:
            return None

        sender = from_user.get("username") or from_user.get("first_name") or str(user_id)
        return InboundMessage(
            id=f"tg-{chat_id}-{message.get('message_id', 0)}",
            group_id=f"{PREFIX}{chat_id}",
            sender=sender,
            content=text,
            timestamp=int(message.get("date", 0)) * 1000,
            channel=self.name,
        )

    @staticmethod
    def _chat_id(group_id: str) -> int:
        return int(group_id.removeprefix(PREFIX))

    async def send(self, group_id: str, text: str) -> None:
        """Send message via Telegram Bot API. Chunks long text."""
        chat_id = self._chat_id(group_id)
        for chunk in chunk_text(text, self.chunk_limit):
            await self._api("sendMessage", chat_id=chat_id, text=chunk)

    async def set_typing(self, group_id: str, typing: bool) -> None:
        """Send typing indicator. Telegram has no explicit 'off'."""
        if not typing:
            return
        try:
            await self._api("sendChatAction", chat_id=self._chat_id(group_id), action="typing")
        except (httpx.HTTPError, TelegramError, ValueError) as e:
            log.debug("Typing indicator failed (non-critical): %s", e)

"""WhatsApp channel via the Meta Cloud API.

Inbound: webhook payloads handed over by the HTTP API.
Outbound: Graph API ``messages`` calls (httpx async).
Every sender maps to the group ``wa:<phone>``.
"""

from __future__ import annotations

import hmac
import logging

import httpx

from . import InboundMessage, MessageCallback, chunk_text

log = logging.getLogger(__name__)

PREFIX = "wa:"
GRAPH_VERSION = "v21.0"
_API_BASE = "https://graph.facebook.com/{version}/{phone_number_id}"
_CHUNK_LIMIT = 1600


class WhatsAppError(RuntimeError):
    """Graph API rejected a request."""


def normalize_phone(phone: str) -> str:
    return "".join(c for c in phone if c.isdigit())


def describe_message(msg: dict) -> str:
    """Render a webhook message as text; non-text types get a placeholder."""
    kind = msg.get("type", "")
    if kind == "text":
        return msg.get("text", {}).get("body", "")
    if kind == "image":
        return msg.get("image", {}).get("caption") or "[Image]"
    if kind == "video":
        return msg.get("video", {}).get("caption") or "[Video]"
    if kind == "audio":
        return "[Audio]"
    if kind == "voice":
        return "[Voice message]"
    if kind == "document":
        filename = msg.get("document", {}).get("filename")
        return f"[Document: {filename}]" if filename else "[Document]"
    if kind == "location":
        loc = msg.get("location", {})
        if loc.get("latitude") and loc.get("longitude"):
            return f"[Location: {loc['latitude']}, {loc['longitude']}]"
        return "[Location]"
    if kind == "contacts":
        contacts = msg.get("contacts")
        return f"[{len(contacts)} contact(s)]" if contacts else "[Contacts]"
    if kind == "button":
        return msg.get("button", {}).get("text") or "[Button click]"
    if kind == "interactive":
        interactive = msg.get("interactive", {})
        if interactive.get("type") == "button_reply":
            return interactive.get("button_reply", {}).get("title") or "[Button reply]"
        if interactive.get("type") == "list_reply":
            return interactive.get("list_reply", {}).get("title") or "[List reply]"
        return ""
    return f"[{kind or 'Unknown'} message]"


class WhatsAppChannel:
    name = "whatsapp"
    prefix = PREFIX

    def __init__(
        self,
        phone_number_id: str = "",
        access_token: str = "",
        verify_token: str = "",
        allowed_numbers: list[str] | None = None,
    ):
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.verify_token = verify_token
        self.allowed_numbers = {normalize_phone(n) for n in allowed_numbers or []}
        self._callback: MessageCallback | None = None
        self._client: httpx.AsyncClient | None = None

    def configure(self, **credentials: str) -> None:
        if "phone_number_id" in credentials:
            self.phone_number_id = credentials["phone_number_id"]
        if "access_token" in credentials:
            self.access_token = credentials["access_token"]
        if "verify_token" in credentials:
            self.verify_token = credentials["verify_token"]

    def is_configured(self) -> bool:
        return bool(self.phone_number_id and self.access_token)

    def on_message(self, callback: MessageCallback) -> None:
        self._callback = callback

    def register_phone_number(self, phone: str) -> None:
        self.allowed_numbers.add(normalize_phone(phone))

    async def start(self) -> None:
        if not self.is_configured():
            log.info("WhatsApp not configured, channel idle")
            return
        log.info("WhatsApp channel ready (webhook mode, phone id %s)", self.phone_number_id)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ─── Webhook ─────────────────────────────────────────────────

    def verify_webhook(self, mode: str, token: str, challenge: str) -> str | None:
        """Return the challenge when the subscription handshake is valid."""
        if mode == "subscribe" and self.verify_token and hmac.compare_digest(token, self.verify_token):
            return challenge
        return None

    def handle_webhook(self, payload: dict) -> list[InboundMessage]:
        """Parse a webhook payload and forward each accepted message."""
        accepted = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                for raw in (change.get("value") or {}).get("messages") or []:
                    msg = self._parse_message(raw)
                    if msg is None:
                        continue
                    accepted.append(msg)
                    if self._callback is not None:
                        self._callback(msg)
        return accepted

    def _parse_message(self, raw: dict) -> InboundMessage | None:
        phone = raw.get("from", "")
        if self.allowed_numbers and phone not in self.allowed_numbers:
            log.info("Ignoring message from unregistered number: %s", phone)
            return None
        content = describe_message(raw)
        if not content:
            return None
        kwargs = {}
        if raw.get("id"):
            kwargs["id"] = raw["id"]
        if raw.get("timestamp"):
            kwargs["timestamp"] = int(raw["timestamp"]) * 1000
        return InboundMessage(
            group_id=f"{PREFIX}{phone}",
            sender=phone,
            content=content,
            channel=self.name,
            **kwargs,
        )

    # ─── Outbound ────────────────────────────────────────────────

    async def _api(self, endpoint: str, body: dict) -> dict:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
        url = _API_BASE.format(version=GRAPH_VERSION, phone_number_id=self.phone_number_id)
        resp = await self._client.post(
            f"{url}/{endpoint}",
            json=body,
            headers={"Authorization": f"Bearer {self.access_token}"},
        )
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("error", {}).get("message", "")
            except ValueError:
                detail = ""
            raise WhatsAppError(f"WhatsApp API error: {detail or f'HTTP {resp.status_code}'}")
        return resp.json()

    async def send(self, group_id: str, text: str) -> None:
        phone = group_id.removeprefix(PREFIX)
        for chunk in chunk_text(text, _CHUNK_LIMIT):
            await self._api("messages", {
                "messaging_product": "whatsapp",
                "to": phone,
                "type": "text",
                "text": {"body": chunk},
            })

    async def set_typing(self, group_id: str, typing: bool) -> None:
        try:
            await self._api("messages", {
                "messaging_product": "whatsapp",
                "to": group_id.removeprefix(PREFIX),
                "type": "typing",
                "typing": "true" if typing else "false",
            })
        except (httpx.HTTPError, WhatsAppError) as e:
            log.debug("WhatsApp typing failed (non-critical): %s", e)

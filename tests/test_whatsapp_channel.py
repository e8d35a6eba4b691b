"""Tests for channels/whatsapp.py — webhook handshake, payload parsing
and outbound Graph API calls."""

from unittest.mock import AsyncMock

import httpx
import pytest

from channels.whatsapp import (
    WhatsAppChannel,
    WhatsAppError,
    describe_message,
    normalize_phone,
)


def _channel(**overrides):
    defaults = {
        "phone_number_id": "1234",
        "access_token": "token",
        "verify_token": "verify-me",
        "allowed_numbers": ["+49 155 5000"],
    }
    defaults.update(overrides)
    return WhatsAppChannel(**defaults)


def _payload(*messages):
    return {"entry": [{"changes": [{"value": {"messages": list(messages)}}]}]}


def _text(body, phone="491555000", msg_id="wamid.1"):
    return {"from": phone, "id": msg_id, "timestamp": "1700000000",
            "type": "text", "text": {"body": body}}


class TestDescribeMessage:
    @pytest.mark.parametrize("msg,expected", [
        ({"type": "text", "text": {"body": "hi"}}, "hi"),
        ({"type": "image", "image": {"caption": "sunset"}}, "sunset"),
        ({"type": "image", "image": {}}, "[Image]"),
        ({"type": "voice"}, "[Voice message]"),
        ({"type": "document", "document": {"filename": "a.pdf"}}, "[Document: a.pdf]"),
        ({"type": "location", "location": {"latitude": 1.5, "longitude": 2.5}},
         "[Location: 1.5, 2.5]"),
        ({"type": "contacts", "contacts": [{}, {}]}, "[2 contact(s)]"),
        ({"type": "interactive", "interactive": {"type": "button_reply",
                                                 "button_reply": {"title": "Yes"}}}, "Yes"),
        ({"type": "sticker"}, "[sticker message]"),
    ])
    def test_rendering(self, msg, expected):
        assert describe_message(msg) == expected


def test_normalize_phone():
    assert normalize_phone("+49 (155) 5000") == "491555000"


class TestVerifyWebhook:
    def test_valid_handshake(self):
        assert _channel().verify_webhook("subscribe", "verify-me", "abc") == "abc"

    def test_wrong_token(self):
        assert _channel().verify_webhook("subscribe", "nope", "abc") is None

    def test_wrong_mode(self):
        assert _channel().verify_webhook("unsubscribe", "verify-me", "abc") is None

    def test_no_verify_token_configured(self):
        assert _channel(verify_token="").verify_webhook("subscribe", "", "abc") is None


class TestHandleWebhook:
    def test_forwards_allowed_message(self):
        ch = _channel()
        received = []
        ch.on_message(received.append)
        accepted = ch.handle_webhook(_payload(_text("hello")))
        assert accepted == received
        (msg,) = received
        assert msg.group_id == "wa:491555000"
        assert msg.content == "hello"
        assert msg.id == "wamid.1"
        assert msg.timestamp == 1700000000 * 1000

    def test_unregistered_number_ignored(self):
        ch = _channel()
        assert ch.handle_webhook(_payload(_text("hi", phone="15550001"))) == []

    def test_register_phone_number(self):
        ch = _channel()
        ch.register_phone_number("+1 555 0001")
        assert len(ch.handle_webhook(_payload(_text("hi", phone="15550001")))) == 1

    def test_status_updates_ignored(self):
        payload = {"entry": [{"changes": [{"value": {"statuses": [{"status": "read"}]}}]}]}
        assert _channel().handle_webhook(payload) == []

    def test_empty_payload(self):
        assert _channel().handle_webhook({}) == []


class TestOutbound:
    @pytest.mark.asyncio
    async def test_send_text(self):
        ch = _channel()
        ch._api = AsyncMock(return_value={})
        await ch.send("wa:491555000", "hello")
        ch._api.assert_awaited_once_with("messages", {
            "messaging_product": "whatsapp",
            "to": "491555000",
            "type": "text",
            "text": {"body": "hello"},
        })

    @pytest.mark.asyncio
    async def test_api_error_raises(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer token"
            return httpx.Response(400, json={"error": {"message": "Invalid recipient"}})

        ch = _channel()
        ch._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(WhatsAppError, match="Invalid recipient"):
            await ch.send("wa:491555000", "hello")
        await ch.stop()

    @pytest.mark.asyncio
    async def test_typing_failure_non_fatal(self):
        ch = _channel()
        ch._api = AsyncMock(side_effect=WhatsAppError("nope"))
        await ch.set_typing("wa:491555000", True)

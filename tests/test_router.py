"""Tests for router.py — prefix routing and delivery failures."""

import pytest
from conftest import RecordingChannel

from router import DeliveryError, Router


class FailingChannel(RecordingChannel):
    async def send(self, group_id, text):
        raise ConnectionError("network down")

    async def set_typing(self, group_id, typing):
        raise ConnectionError("network down")


@pytest.fixture
def channels():
    local = RecordingChannel("local", "local:")
    telegram = RecordingChannel("telegram", "tg:")
    whatsapp = RecordingChannel("whatsapp", "wa:")
    return local, telegram, whatsapp


class TestFindChannel:
    def test_by_prefix(self, channels):
        local, telegram, whatsapp = channels
        router = Router(local, [telegram, whatsapp])
        assert router.find_channel("tg:123") is telegram
        assert router.find_channel("wa:4915550") is whatsapp
        assert router.find_channel("local:main") is local

    def test_unknown_prefix_goes_to_primary(self, channels):
        local, telegram, _ = channels
        router = Router(local, [telegram])
        assert router.find_channel("slack:abc") is local

    def test_add_is_idempotent(self, channels):
        local, telegram, _ = channels
        router = Router(local)
        router.add(telegram)
        router.add(telegram)
        assert router.channels == [local, telegram]


class TestSend:
    @pytest.mark.asyncio
    async def test_routes_text(self, channels):
        local, telegram, _ = channels
        router = Router(local, [telegram])
        await router.send("tg:9", "hello")
        assert telegram.sent == [("tg:9", "hello")]
        assert local.sent == []

    @pytest.mark.asyncio
    async def test_failure_wrapped(self):
        router = Router(FailingChannel("local", "local:"))
        with pytest.raises(DeliveryError, match="local: network down"):
            await router.send("local:main", "hi")

    @pytest.mark.asyncio
    async def test_typing_failure_swallowed(self):
        router = Router(FailingChannel("local", "local:"))
        await router.set_typing("local:main", True)

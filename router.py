"""Router — maps a conversation's namespace prefix to its channel."""

from __future__ import annotations

import logging

from channels import Channel

log = logging.getLogger(__name__)


class DeliveryError(Exception):
    """A channel failed to deliver outbound text."""


class Router:
    """Prefix → channel lookup. Unknown prefixes go to the primary channel."""

    def __init__(self, primary: Channel, channels: list[Channel] | None = None):
        self.primary = primary
        self._channels: list[Channel] = [primary]
        for ch in channels or []:
            self.add(ch)

    def add(self, channel: Channel) -> None:
        if channel not in self._channels:
            self._channels.append(channel)

    @property
    def channels(self) -> list[Channel]:
        return list(self._channels)

    def find_channel(self, group_id: str) -> Channel:
        for ch in self._channels:
            if group_id.startswith(ch.prefix):
                return ch
        return self.primary

    async def send(self, group_id: str, text: str) -> None:
        channel = self.find_channel(group_id)
        try:
            await channel.send(group_id, text)
        except Exception as e:
            raise DeliveryError(f"{channel.name}: {e}") from e

    async def set_typing(self, group_id: str, typing: bool) -> None:
        channel = self.find_channel(group_id)
        try:
            await channel.set_typing(group_id, typing)
        except Exception as e:
            log.debug("Typing signal to %s failed: %s", channel.name, e)

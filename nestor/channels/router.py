"""Routing between channels and groups.

Inbound: decides whether a message should wake its group. Groups that
require a trigger only wake for messages starting with @<assistant name>;
the main group never requires one.

Outbound: picks the channel that owns a group id.
"""

from __future__ import annotations

import logging
import re

from nestor.channels.base import Channel, InboundHandler
from nestor.core.errors import ChannelError
from nestor.core.types import Group, InboundMessage

logger = logging.getLogger(__name__)


def trigger_pattern(assistant_name: str) -> re.Pattern[str]:
    """Pattern matching messages addressed to the assistant ("@Nestor ...")."""
    return re.compile(rf"^@{re.escape(assistant_name)}\b", re.IGNORECASE)


def format_inbound(message: InboundMessage) -> str:
    """Prompt text for a message: "<sender>: <text>"."""
    return f"{message.sender}: {message.text}"


class ChannelRouter:
    """Owns the connected channels and routes messages through them."""

    def __init__(self, channels: list[Channel], assistant_name: str) -> None:
        self._channels = list(channels)
        self._trigger = trigger_pattern(assistant_name)

    @property
    def channels(self) -> list[Channel]:
        return list(self._channels)

    def should_wake(self, group: Group, message: InboundMessage) -> bool:
        if group.is_main or not group.requires_trigger:
            return True
        return bool(self._trigger.match(message.text.strip()))

    def channel_for(self, group_id: str) -> Channel | None:
        for channel in self._channels:
            if channel.owns_group(group_id):
                return channel
        return None

    async def send(self, group_id: str, text: str) -> None:
        """Deliver text to a group through its channel.

        Raises:
            ChannelError: If no channel owns the group or delivery failed.
        """
        channel = self.channel_for(group_id)
        if channel is None:
            raise ChannelError(f"No channel owns group {group_id}")
        await channel.send_message(group_id, text)

    async def connect_all(self, on_inbound: InboundHandler) -> None:
        for channel in self._channels:
            await channel.connect(on_inbound)

    async def disconnect_all(self) -> None:
        for channel in self._channels:
            try:
                await channel.disconnect()
            except ChannelError as e:
                logger.warning("Channel %s failed to disconnect: %s", channel.name, e.message)

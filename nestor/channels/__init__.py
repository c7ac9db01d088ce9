"""Channel adapters and routing."""

from nestor.channels.base import Channel, InboundHandler
from nestor.channels.router import ChannelRouter, format_inbound, trigger_pattern
from nestor.channels.webhook import WebhookChannel

__all__ = [
    "Channel",
    "ChannelRouter",
    "InboundHandler",
    "WebhookChannel",
    "format_inbound",
    "trigger_pattern",
]

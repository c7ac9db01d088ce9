"""Channel adapter contract.

A channel owns a slice of the group-id namespace (usually by prefix, e.g.
"wa:" or "hook:"), hands inbound messages to the host and delivers the
host's replies. Concrete transports live outside the core.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from nestor.core.types import InboundMessage

InboundHandler = Callable[[InboundMessage], Awaitable[None]]


class Channel(ABC):
    """Base class for channel adapters."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short channel name for logs."""

    @abstractmethod
    def owns_group(self, group_id: str) -> bool:
        """Whether replies for this group go through this channel."""

    @abstractmethod
    async def connect(self, on_inbound: InboundHandler) -> None:
        """Start receiving. Every inbound message is passed to on_inbound."""

    @abstractmethod
    async def send_message(self, group_id: str, text: str) -> None:
        """Deliver text to a group.

        Raises:
            ChannelError: If delivery failed after any retries.
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Stop receiving and release resources. Safe to call twice."""

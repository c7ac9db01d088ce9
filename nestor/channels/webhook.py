"""Generic HTTP webhook channel.

Outbound replies are POSTed as {"groupId": ..., "text": ...} to a configured
URL, optionally with a bearer token read from the environment. Inbound
messages arrive through receive(), which an HTTP front end calls with the
decoded request body.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import httpx

from nestor.channels.base import Channel, InboundHandler
from nestor.config.schema import WebhookChannelConfig
from nestor.core.errors import ChannelError
from nestor.core.types import InboundMessage

logger = logging.getLogger(__name__)

# HTTP status codes that warrant a retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# Upper bound for a single backoff delay
MAX_RETRY_DELAY = 30.0

# Error bodies are truncated to this many bytes in messages
MAX_ERROR_BODY_SIZE = 2048


class WebhookChannel(Channel):
    """Channel that talks to a remote service over HTTP."""

    def __init__(
        self,
        config: WebhookChannelConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._on_inbound: InboundHandler | None = None

    @property
    def name(self) -> str:
        return self._config.name

    def owns_group(self, group_id: str) -> bool:
        return group_id.startswith(self._config.prefix)

    async def connect(self, on_inbound: InboundHandler) -> None:
        self._on_inbound = on_inbound
        await self._ensure_client()
        logger.info("Webhook channel %s connected (%s)", self.name, self._config.url)

    async def disconnect(self) -> None:
        self._on_inbound = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._config.request_timeout,
                transport=self._transport,
            )
        return self._client

    def _build_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.token_env:
            token = os.environ.get(self._config.token_env)
            if not token:
                raise ChannelError(
                    f"Webhook token not set. Set the {self._config.token_env} environment variable."
                )
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff with up to one second of jitter."""
        delay = (self._config.retry_backoff**attempt) + random.uniform(0, 1)
        return min(delay, MAX_RETRY_DELAY)

    # === Inbound ===

    async def receive(self, payload: dict[str, Any]) -> InboundMessage:
        """Accept one inbound webhook body and hand it to the host.

        Expected keys: groupId, text, and optionally sender, timestamp
        (ISO-8601) and messageId.

        Raises:
            ChannelError: If the body is malformed or the channel is not connected.
        """
        if self._on_inbound is None:
            raise ChannelError(f"Channel {self.name} is not connected")

        group_id = payload.get("groupId")
        text = payload.get("text")
        if not isinstance(group_id, str) or not self.owns_group(group_id):
            raise ChannelError(f"groupId must start with {self._config.prefix!r}")
        if not isinstance(text, str):
            raise ChannelError("text must be a string")

        timestamp = datetime.now(timezone.utc)
        raw_ts = payload.get("timestamp")
        if isinstance(raw_ts, str):
            try:
                timestamp = datetime.fromisoformat(raw_ts.replace("Z", "+00:00"))
            except ValueError as e:
                raise ChannelError(f"Invalid timestamp: {raw_ts!r}") from e

        message = InboundMessage(
            group_id=group_id,
            sender=str(payload.get("sender") or "unknown"),
            text=text,
            timestamp=timestamp,
            message_id=payload.get("messageId"),
        )
        await self._on_inbound(message)
        return message

    # === Outbound ===

    async def send_message(self, group_id: str, text: str) -> None:
        body = {"groupId": group_id, "text": text}
        attempts = self._config.max_retries + 1
        last_error: Exception | None = None

        for attempt in range(attempts):
            try:
                client = await self._ensure_client()
                response = await client.post(
                    self._config.url, headers=self._build_headers(), json=body
                )

                if response.status_code in RETRYABLE_STATUS_CODES:
                    detail = response.content[:MAX_ERROR_BODY_SIZE].decode(errors="replace")
                    last_error = ChannelError(
                        f"Webhook returned {response.status_code}: {detail}"
                    )
                    if attempt < self._config.max_retries:
                        delay = self._calculate_retry_delay(attempt)
                        logger.debug(
                            "Webhook %s got %d, retrying in %.1fs",
                            self.name,
                            response.status_code,
                            delay,
                        )
                        await self._sleep(delay)
                        continue
                    raise last_error

                if response.status_code >= 400:
                    detail = response.content[:MAX_ERROR_BODY_SIZE].decode(errors="replace")
                    raise ChannelError(f"Webhook returned {response.status_code}: {detail}")

                logger.debug("Delivered %d chars to %s via %s", len(text), group_id, self.name)
                return

            except (httpx.ConnectError, httpx.TimeoutException) as e:
                last_error = e
                if attempt < self._config.max_retries:
                    await self._sleep(self._calculate_retry_delay(attempt))
                    continue
                raise ChannelError(
                    f"Webhook {self.name} unreachable after {attempts} attempts: {e}"
                ) from e
            except httpx.HTTPError as e:
                raise ChannelError(f"Webhook {self.name} HTTP error: {e}") from e

        raise ChannelError(f"Webhook delivery failed after {attempts} attempts: {last_error}")

"""Webhook channel: replies are POSTed as JSON to a configured URL."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
from loguru import logger

from relay_agent.channels.base import BaseChannel, ChannelCapabilities
from relay_agent.config.schema import WebhookConfig

if TYPE_CHECKING:
    from relay_agent.pipeline.dispatcher import Dispatcher


class WebhookChannel(BaseChannel):
    """
    Outbound-only adapter.

    Inbound traffic for this channel arrives through the gateway's
    `POST /dispatch` with `channelId: "webhook"`.
    """

    name = "webhook"

    def __init__(
        self,
        config: WebhookConfig,
        dispatcher: Dispatcher | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(config, dispatcher)
        self.config: WebhookConfig = config
        self._client = client
        self._owns_client = client is None

    @property
    def capabilities(self) -> ChannelCapabilities:
        return ChannelCapabilities(max_text_length=max(1, int(self.config.max_text_length)), supports_groups=True)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    async def start(self) -> None:
        if not self.config.url:
            raise ValueError("webhook channel needs channels.webhook.url")
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            self._owns_client = True
        self._running = True
        logger.info(f"Webhook channel posting to {self.config.url}")

    async def stop(self) -> None:
        self._running = False
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, payload: dict[str, object]) -> None:
        if self._client is None:
            raise RuntimeError("webhook channel is not started")
        response = await self._client.post(self.config.url, json=payload, headers=self._headers())
        response.raise_for_status()

    async def send_text(self, peer_id: str, text: str, account_id: str | None = None) -> None:
        await self._post(
            {
                "type": "text",
                "channel": self.name,
                "peerId": peer_id,
                "accountId": account_id,
                "text": text,
            }
        )

    async def send_typing(self, peer_id: str, account_id: str | None = None) -> None:
        await self._post({"type": "typing", "channel": self.name, "peerId": peer_id, "accountId": account_id})

"""Base channel interface for chat surfaces."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from relay_agent.pipeline.context import InboundEvent, PipelineResult

if TYPE_CHECKING:
    from relay_agent.pipeline.dispatcher import Dispatcher

# Per-channel text limits
CHANNEL_TEXT_LIMITS: dict[str, int] = {
    "whatsapp": 1600,
    "telegram": 4096,
    "discord": 2000,
    "slack": 4000,
    "webhook": 4000,
}

DEFAULT_TEXT_LIMIT = 4000


@dataclass(frozen=True)
class ChannelCapabilities:
    """What a channel can carry; consulted by outbound chunking."""

    max_text_length: int = DEFAULT_TEXT_LIMIT
    media: tuple[str, ...] = ()
    supports_threads: bool = False
    supports_groups: bool = False


class BaseChannel(ABC):
    """
    Abstract base class for channel adapters.

    A channel feeds inbound messages to the dispatcher through
    `_handle_message()` and receives replies through `send_text()`.
    """

    name: str = "base"

    def __init__(self, config: Any, dispatcher: Dispatcher | None = None):
        """
        Initialize the channel.

        Args:
            config: Channel-specific configuration.
            dispatcher: Dispatcher that inbound messages are handed to.
        """
        self.config = config
        self.dispatcher = dispatcher
        self._running = False

    @property
    def capabilities(self) -> ChannelCapabilities:
        return ChannelCapabilities(max_text_length=CHANNEL_TEXT_LIMITS.get(self.name, DEFAULT_TEXT_LIMIT))

    @abstractmethod
    async def start(self) -> None:
        """Connect to the platform and begin accepting messages."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and clean up resources."""

    @abstractmethod
    async def send_text(self, peer_id: str, text: str, account_id: str | None = None) -> None:
        """Send one text message. Raises on failure."""

    async def send_typing(self, peer_id: str, account_id: str | None = None) -> None:
        """Show a typing indicator. Channels without one do nothing."""
        return None

    async def send_image(self, peer_id: str, url: str, caption: str = "") -> None:
        raise NotImplementedError(f"{self.name} does not support images")

    async def send_document(self, peer_id: str, url: str, filename: str = "") -> None:
        raise NotImplementedError(f"{self.name} does not support documents")

    async def send_reaction(self, peer_id: str, message_id: str, emoji: str) -> None:
        raise NotImplementedError(f"{self.name} does not support reactions")

    def is_allowed(self, sender_id: str) -> bool:
        """True when `sender_id` matches an `allow_from` entry; an empty list admits everyone."""
        allowed = getattr(self.config, "allow_from", None) or []
        if not allowed:
            return True
        sender = self._identity_forms(sender_id)
        return any(sender & self._identity_forms(entry) for entry in allowed)

    @staticmethod
    def _identity_forms(raw: str) -> set[str]:
        """
        Comparable forms of an identity.

        Covers `name|id` pairs, `user@host` ids and phone numbers written with
        punctuation or a leading zero.
        """
        value = str(raw or "").strip()
        forms = {value}
        forms.update(piece.strip() for piece in value.split("|"))
        forms.add(value.partition("@")[0].strip())
        digits = "".join(re.findall(r"\d", value))
        forms.update((digits, digits.lstrip("0")))
        return {form for form in forms if form}

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        media: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PipelineResult | None:
        """
        Turn a platform message into an `InboundEvent` and dispatch it.

        `chat_id` is where replies go; `sender_id` is checked against the allow
        list. Recognised `metadata` keys: message_id, account_id, is_group,
        thread_id, sender_name.
        """
        if self.dispatcher is None:
            logger.warning(f"Channel {self.name} has no dispatcher; dropping message from {sender_id}")
            return None
        if not self.is_allowed(sender_id):
            logger.warning(
                f"Sender {sender_id} is not in allowFrom for channel {self.name}; message dropped"
            )
            return None

        meta = metadata or {}
        event = InboundEvent(
            source="channel",
            body=content,
            channel_id=self.name,
            account_id=meta.get("account_id"),
            peer_id=str(chat_id),
            peer_name=meta.get("sender_name") or str(sender_id),
            message_id=meta.get("message_id"),
            media_urls=list(media or []),
            is_group=bool(meta.get("is_group")),
            thread_id=meta.get("thread_id"),
        )
        return await self.dispatcher.dispatch(event)

    @property
    def is_running(self) -> bool:
        return self._running

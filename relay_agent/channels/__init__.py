"""Channel adapters."""

from relay_agent.channels.base import CHANNEL_TEXT_LIMITS, BaseChannel, ChannelCapabilities
from relay_agent.channels.webhook import WebhookChannel

__all__ = ["BaseChannel", "CHANNEL_TEXT_LIMITS", "ChannelCapabilities", "WebhookChannel"]

"""Inbound event, per-turn message context and pipeline result types."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from relay_agent.utils.cancel import CancelToken

if TYPE_CHECKING:
    from relay_agent.channels.base import BaseChannel

ChunkCallback = Callable[[str], Awaitable[Any] | Any]
AudioCallback = Callable[[bytes], Awaitable[Any] | Any]

SOURCES = ("cli", "gateway", "channel")


@dataclass
class InboundEvent:
    """One inbound text event as handed to `Dispatcher.dispatch`."""

    source: str
    body: str
    channel_id: str | None = None
    account_id: str | None = None
    peer_id: str | None = None
    peer_name: str | None = None
    message_id: str | None = None
    media_urls: list[str] = field(default_factory=list)
    is_group: bool = False
    thread_id: str | None = None
    on_chunk: ChunkCallback | None = None
    on_audio: AudioCallback | None = None
    cancel: CancelToken | None = None
    collected: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InboundEvent":
        """Build from a JSON payload; camelCase and snake_case keys both work."""

        def pick(*names: str) -> Any:
            for name in names:
                if name in data and data[name] is not None:
                    return data[name]
            return None

        def text(*names: str) -> str | None:
            value = pick(*names)
            return None if value is None else str(value)

        source = str(pick("source") or "gateway").strip().lower()
        if source not in SOURCES:
            raise ValueError(f"unknown source '{source}'")
        media = pick("media_urls", "mediaUrls") or []
        return cls(
            source=source,
            body=str(pick("body", "text") or ""),
            channel_id=text("channel_id", "channelId"),
            account_id=text("account_id", "accountId"),
            peer_id=text("peer_id", "peerId", "session_key", "sessionKey"),
            peer_name=text("peer_name", "peerName"),
            message_id=text("message_id", "messageId"),
            media_urls=[str(item) for item in media] if isinstance(media, list) else [],
            is_group=bool(pick("is_group", "isGroup")),
            thread_id=text("thread_id", "threadId"),
        )


@dataclass
class ParsedDirectives:
    think: str | None = None
    model: str | None = None
    exec_approval: str | None = None

    @property
    def empty(self) -> bool:
        return self.think is None and self.model is None and self.exec_approval is None


@dataclass
class ParsedCommand:
    name: str
    args: str = ""


@dataclass
class MessageContext:
    """Working state for one turn; created at dispatch entry and dropped afterwards."""

    source: str
    raw_body: str
    body: str
    channel_id: str | None = None
    account_id: str | None = None
    peer_id: str | None = None
    peer_name: str | None = None
    message_id: str | None = None
    media_urls: list[str] = field(default_factory=list)
    is_group: bool = False
    thread_id: str | None = None
    on_chunk: ChunkCallback | None = None
    on_audio: AudioCallback | None = None
    agent_id: str = "default"
    session_key: str = ""
    directives: ParsedDirectives = field(default_factory=ParsedDirectives)
    command: ParsedCommand | None = None
    injection_warning: bool = False
    cancel: CancelToken = field(default_factory=CancelToken)
    received_at: float = field(default_factory=time.time)
    channel: BaseChannel | None = None

    @classmethod
    def from_event(cls, event: InboundEvent, received_at: float) -> "MessageContext":
        return cls(
            source=event.source,
            raw_body=event.body,
            body=event.body,
            channel_id=event.channel_id,
            account_id=event.account_id,
            peer_id=event.peer_id,
            peer_name=event.peer_name,
            message_id=event.message_id,
            media_urls=list(event.media_urls),
            is_group=event.is_group,
            thread_id=event.thread_id,
            on_chunk=event.on_chunk,
            on_audio=event.on_audio,
            cancel=event.cancel or CancelToken(),
            received_at=received_at,
        )


@dataclass
class PipelineResult:
    session_key: str = ""
    reply: str = ""
    chunks: list[str] = field(default_factory=list)
    aborted: bool = False
    error: str | None = None
    merged: bool = False
    attempts: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.reply and not self.error and not self.aborted

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionKey": self.session_key,
            "reply": self.reply,
            "chunks": list(self.chunks),
            "aborted": self.aborted,
            "error": self.error,
            "merged": self.merged,
            "attempts": self.attempts,
        }

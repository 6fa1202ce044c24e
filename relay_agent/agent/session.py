"""Agent session contract and the per-key handle wrapping a live session."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from relay_agent.agent.models import ModelRef

SessionEvent = dict[str, Any]
SessionListener = Callable[[SessionEvent], Any]


@runtime_checkable
class AgentSession(Protocol):
    """
    Opaque conversation session.

    Events delivered to subscribers are dicts with a `type` key:
    `text_delta` (`delta`) and `usage` (`input`, `output`, `cache_read`, `cache_write`).
    """

    async def prompt(self, text: str) -> None: ...

    def subscribe(self, callback: SessionListener) -> Callable[[], None]: ...

    async def compact(self, instructions: str | None = None) -> dict[str, Any]: ...

    async def dispose(self) -> None: ...


class SessionFactory(Protocol):
    """Builds a session bound to a model and credential."""

    def __call__(
        self,
        *,
        session_key: str,
        model: ModelRef,
        credential: str | None,
        reasoning: str,
        exec_approval: str | None = None,
        agent_id: str | None = None,
    ) -> Awaitable[AgentSession]: ...


@dataclass
class Usage:
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_read + self.cache_write

    def add(self, event: dict[str, Any]) -> None:
        self.input += int(event.get("input", 0) or 0)
        self.output += int(event.get("output", 0) or 0)
        self.cache_read += int(event.get("cache_read", 0) or 0)
        self.cache_write += int(event.get("cache_write", 0) or 0)


@dataclass
class SessionHandle:
    """A live session plus the model, credential and usage it was created with."""

    session: AgentSession
    model: ModelRef
    credential: str | None = None
    reasoning: str = "off"
    agent_id: str | None = None
    usage: Usage = field(default_factory=Usage)
    created_at: float = field(default_factory=time.time)
    disposed: bool = False

    async def dispose(self) -> None:
        """Dispose the session once; later calls are no-ops."""
        if self.disposed:
            return
        self.disposed = True
        await self.session.dispose()

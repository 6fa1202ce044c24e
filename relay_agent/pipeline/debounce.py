"""Keyed debounce buffers: one flush per quiet period, bodies in arrival order."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from relay_agent.utils.timers import ScheduledCall, Scheduler

T = TypeVar("T")

FlushCallback = Callable[[str, list[str], list[T]], Any]


@dataclass
class _Pending(Generic[T]):
    bodies: list[str] = field(default_factory=list)
    payloads: list[T] = field(default_factory=list)
    timer: ScheduledCall | None = None


class Debouncer(Generic[T]):
    """
    Collects bodies per key and flushes them after `window_seconds` of quiet.

    Each arrival cancels the key's pending timer before arming a new one, and
    the entry is removed from the map before `on_flush` runs.
    """

    def __init__(self, scheduler: Scheduler, window_seconds: float, on_flush: FlushCallback):
        self.scheduler = scheduler
        self.window_seconds = max(0.0, float(window_seconds))
        self.on_flush = on_flush
        self._pending: dict[str, _Pending[T]] = {}

    def push(self, key: str, body: str, payload: T) -> None:
        entry = self._pending.get(key)
        if entry is None:
            entry = _Pending()
            self._pending[key] = entry
        entry.bodies.append(body)
        entry.payloads.append(payload)
        if entry.timer is not None:
            entry.timer.cancel()
        entry.timer = self.scheduler.call_later(self.window_seconds, lambda: self._flush(key, entry))

    def _flush(self, key: str, entry: _Pending[T]) -> None:
        if self._pending.get(key) is not entry:
            return
        del self._pending[key]
        entry.timer = None
        self.on_flush(key, list(entry.bodies), list(entry.payloads))

    def pending(self, key: str) -> int:
        entry = self._pending.get(key)
        return len(entry.bodies) if entry else 0

    def keys(self) -> list[str]:
        return list(self._pending)

    def cancel_all(self) -> list[T]:
        """Drop every buffer without flushing; returns the dropped payloads."""
        dropped: list[T] = []
        for entry in self._pending.values():
            if entry.timer is not None:
                entry.timer.cancel()
            dropped.extend(entry.payloads)
        self._pending.clear()
        return dropped

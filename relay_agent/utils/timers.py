"""Scheduled-callback abstraction used by debounce, coalescing and typing timers.

Production code runs on `AsyncioScheduler`; tests drive `VirtualScheduler`
forward with `advance()` so timer-driven buffers flush deterministically.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from loguru import logger

TimerCallback = Callable[[], Any]


class ScheduledCall:
    """Handle for one pending callback: a deadline plus cancel()."""

    __slots__ = ("deadline", "callback", "cancelled", "_handle")

    def __init__(self, deadline: float, callback: TimerCallback):
        self.deadline = deadline
        self.callback = callback
        self.cancelled = False
        self._handle: asyncio.TimerHandle | None = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def fire(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        try:
            self.callback()
        except Exception as exc:
            logger.error(f"Scheduled callback failed: {exc}")


class Scheduler(ABC):
    """Clock plus one-shot timers."""

    @abstractmethod
    def now(self) -> float:
        """Current scheduler time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: TimerCallback) -> ScheduledCall:
        """Run `callback` once after `delay` seconds unless cancelled."""


class AsyncioScheduler(Scheduler):
    """Timers backed by the running event loop."""

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: TimerCallback) -> ScheduledCall:
        delay = max(0.0, float(delay))
        call = ScheduledCall(self.now() + delay, callback)
        loop = asyncio.get_running_loop()
        call._handle = loop.call_later(delay, call.fire)
        return call


class VirtualScheduler(Scheduler):
    """Manually advanced clock for deterministic tests."""

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._queue: list[tuple[float, int, ScheduledCall]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: TimerCallback) -> ScheduledCall:
        call = ScheduledCall(self._now + max(0.0, float(delay)), callback)
        heapq.heappush(self._queue, (call.deadline, next(self._seq), call))
        return call

    @property
    def pending(self) -> int:
        return sum(1 for _, _, call in self._queue if not call.cancelled)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due callbacks in deadline order."""
        target = self._now + max(0.0, float(seconds))
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            deadline, _, call = heapq.heappop(self._queue)
            if call.cancelled:
                continue
            self._now = max(self._now, deadline)
            call.fire()
            fired += 1
        self._now = target
        return fired

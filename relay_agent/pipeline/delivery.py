"""Outbound delivery: paced chunk sending and the typing-indicator lifecycle."""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable

from loguru import logger

from relay_agent.utils.cancel import CancelToken
from relay_agent.utils.timers import ScheduledCall, Scheduler

SendText = Callable[[str], Awaitable[Any]]


async def deliver_chunks(
    send: SendText,
    chunks: list[str],
    *,
    prefix: str = "",
    delay_min_ms: int = 800,
    delay_max_ms: int = 2500,
    cancel: CancelToken | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> int:
    """
    Send chunks in order with a randomized pause between them.

    Stops on cancellation or at the first failed send. Returns how many
    chunks were sent.
    """
    low = max(0, int(delay_min_ms))
    high = max(low, int(delay_max_ms))
    sent = 0
    for index, chunk in enumerate(chunks):
        if cancel is not None and cancel.cancelled:
            logger.info(f"Delivery cancelled after {sent}/{len(chunks)} chunks")
            break
        if index > 0:
            await sleep((low + rand() * (high - low)) / 1000.0)
            if cancel is not None and cancel.cancelled:
                logger.info(f"Delivery cancelled after {sent}/{len(chunks)} chunks")
                break
        text = f"{prefix}{chunk}" if index == 0 and prefix else chunk
        try:
            await send(text)
        except Exception as e:
            logger.error(f"Delivery failed for chunk {index + 1}/{len(chunks)}: {e}")
            break
        sent += 1
    return sent


class TypingController:
    """
    Periodic typing indicator bounded by a TTL and an explicit seal.

    Once sealed the controller never sends again, even if `start` is called.
    """

    def __init__(
        self,
        send_typing: Callable[[], Awaitable[Any]],
        scheduler: Scheduler,
        refresh_seconds: float = 6.0,
        ttl_seconds: float = 120.0,
    ):
        self._send_typing = send_typing
        self.scheduler = scheduler
        self.refresh_seconds = max(0.1, float(refresh_seconds))
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self._timer: ScheduledCall | None = None
        self._started_at: float | None = None
        self._tasks: set[asyncio.Task] = set()
        self.sealed = False
        self.sent = 0

    @property
    def active(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        if self.sealed or self._started_at is not None:
            return
        self._started_at = self.scheduler.now()
        self._fire()
        self._schedule()

    def _schedule(self) -> None:
        self._timer = self.scheduler.call_later(self.refresh_seconds, self._tick)

    def _tick(self) -> None:
        self._timer = None
        if self.sealed or self._started_at is None:
            return
        if self.scheduler.now() - self._started_at >= self.ttl_seconds:
            logger.debug("Typing indicator reached its TTL")
            return
        self._fire()
        self._schedule()

    def _fire(self) -> None:
        self.sent += 1
        task = asyncio.get_running_loop().create_task(self._send())
        self._tasks.add(task)
        task.add_done_callback(lambda done_task: self._tasks.discard(done_task))

    async def _send(self) -> None:
        try:
            await self._send_typing()
        except Exception as e:
            logger.debug(f"Typing indicator failed: {e}")

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def seal(self) -> None:
        self.sealed = True
        self.stop()

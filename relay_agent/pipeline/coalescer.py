"""Block streaming: accumulate streamed text into delivery-sized blocks."""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from typing import Any, Callable

from loguru import logger

from relay_agent.pipeline.chunking import BLOCK_LEVELS, find_cut, has_open_fence, split_blocks
from relay_agent.utils.timers import ScheduledCall, Scheduler


class BlockCoalescer:
    """
    Turns a stream of text fragments into ordered, fence-safe blocks.

    Blocks are handed to `on_flush` one at a time by a single drain task, so
    delivery order matches flush order even when `on_flush` is async.
    """

    def __init__(
        self,
        max_chars: int,
        on_flush: Callable[[str], Any],
        scheduler: Scheduler,
        idle_seconds: float = 1.0,
        dedup_limit: int = 200,
        min_fraction: float = 0.3,
    ):
        self.max_chars = max(1, int(max_chars))
        self.on_flush = on_flush
        self.scheduler = scheduler
        self.idle_seconds = max(0.0, float(idle_seconds))
        self.dedup_limit = max(1, int(dedup_limit))
        self.min_fraction = min_fraction
        self._buffer = ""
        self._timer: ScheduledCall | None = None
        self._seen: set[str] = set()
        self._queue: deque[str] = deque()
        self._drain_task: asyncio.Task | None = None
        self.flushed = 0

    @property
    def buffered(self) -> str:
        return self._buffer

    def push(self, fragment: str) -> None:
        if not fragment:
            return
        self._buffer += fragment
        if len(self._buffer) >= self.max_chars:
            self._cancel_timer()
            self._split_ready()
        self._arm_timer()

    def _split_ready(self) -> None:
        """Flush complete blocks, keeping the tail buffered."""
        min_chars = int(self.max_chars * self.min_fraction)
        blocks: list[str] = []
        while len(self._buffer) >= self.max_chars:
            cut = find_cut(self._buffer, self.max_chars, min_chars, BLOCK_LEVELS)
            if cut >= len(self._buffer):
                break
            blocks.append(self._buffer[:cut])
            self._buffer = self._buffer[cut:].lstrip()
        self._enqueue(blocks)

    def _arm_timer(self) -> None:
        self._cancel_timer()
        if self._buffer.strip():
            self._timer = self.scheduler.call_later(self.idle_seconds, self._on_idle)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_idle(self) -> None:
        self._timer = None
        if has_open_fence(self._buffer):
            self._arm_timer()
            return
        self._flush_all()

    def _flush_all(self) -> None:
        text, self._buffer = self._buffer, ""
        if text.strip():
            self._enqueue(split_blocks(text, self.max_chars, self.min_fraction))

    def _enqueue(self, blocks: list[str]) -> None:
        for block in blocks:
            block = block.strip()
            if not block or block in self._seen:
                continue
            self._seen.add(block)
            if len(self._seen) > self.dedup_limit:
                self._seen.clear()
            self._queue.append(block)
        if self._queue and (self._drain_task is None or self._drain_task.done()):
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            block = self._queue.popleft()
            try:
                result = self.on_flush(block)
                if inspect.isawaitable(result):
                    await result
                self.flushed += 1
            except Exception as e:
                logger.error(f"Coalescer flush error: {e}")

    async def finish(self) -> None:
        """Flush whatever is buffered and wait until every block was handed off."""
        self._cancel_timer()
        self._flush_all()
        while self._drain_task is not None and not self._drain_task.done():
            await self._drain_task

    def clear(self) -> None:
        self._cancel_timer()
        self._buffer = ""
        self._queue.clear()
        self._seen.clear()

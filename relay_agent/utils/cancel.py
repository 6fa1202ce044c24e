"""Cooperative cancellation token shared by dispatch, runner and delivery."""

from __future__ import annotations

import asyncio


class CancelToken:
    """One-shot cancellation flag that coroutines can poll or await."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

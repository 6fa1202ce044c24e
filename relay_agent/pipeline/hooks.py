"""Lifecycle hooks around dispatch."""

from __future__ import annotations

import inspect
from typing import Any, Callable

from loguru import logger

HOOK_EVENTS = ("message_inbound", "message_outbound", "turn_start", "turn_end", "error")

HookHandler = Callable[[dict[str, Any]], Any]


class HookRegistry:
    """Ordered handlers per event. A failing handler is logged and skipped."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[HookHandler]] = {}

    def register(self, event: str, handler: HookHandler) -> Callable[[], None]:
        if event not in HOOK_EVENTS:
            raise ValueError(f"unknown hook event '{event}'")
        self._handlers.setdefault(event, []).append(handler)

        def unregister() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unregister

    def count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    async def run(self, event: str, data: dict[str, Any]) -> dict[str, Any] | None:
        """
        Call every handler for `event` in registration order.

        The first mapping result with a truthy `abort` is returned and stops
        the remaining handlers; otherwise None.
        """
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                logger.warning(f"Hook '{event}' handler failed: {e}")
                continue
            if isinstance(result, dict) and result.get("abort"):
                return result
        return None

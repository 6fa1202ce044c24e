"""Session handle cache with staleness-driven eviction."""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Callable

from loguru import logger

from relay_agent.agent.models import ModelRef
from relay_agent.agent.session import SessionHandle

RESET_MODES = ("manual", "daily", "idle")


class StalenessPolicy:
    """Decides whether a cached session must be replaced before reuse."""

    def __init__(
        self,
        mode: str = "manual",
        reset_at_hour: int = 0,
        idle_minutes: int = 120,
        clock: Callable[[], float] = time.time,
    ):
        self.mode = mode if mode in RESET_MODES else "manual"
        self.reset_at_hour = min(23, max(0, int(reset_at_hour)))
        self.idle_minutes = max(0, int(idle_minutes))
        self._clock = clock

    def last_reset_boundary(self, now: float | None = None) -> float:
        """Most recent daily reset instant at or before `now` (local time)."""
        current = datetime.fromtimestamp(self._clock() if now is None else now)
        boundary = current.replace(hour=self.reset_at_hour, minute=0, second=0, microsecond=0)
        if boundary > current:
            boundary -= timedelta(days=1)
        return boundary.timestamp()

    def is_stale(self, last_active: float | None) -> bool:
        if last_active is None or self.mode == "manual":
            return False
        now = self._clock()
        if self.mode == "daily":
            return last_active < self.last_reset_boundary(now)
        return now - last_active > self.idle_minutes * 60


class SessionRegistry:
    """
    Live session handles by session key.

    The handle map and the last-active map are always updated together,
    without an await in between.
    """

    def __init__(self, policy: StalenessPolicy | None = None, clock: Callable[[], float] = time.time):
        self.policy = policy or StalenessPolicy(clock=clock)
        self._clock = clock
        self._handles: dict[str, SessionHandle] = {}
        self._last_active: dict[str, float] = {}
        self._model_overrides: dict[str, ModelRef] = {}

    def get(self, key: str) -> SessionHandle | None:
        return self._handles.get(key)

    def last_active(self, key: str) -> float | None:
        return self._last_active.get(key)

    def evaluate(self, key: str) -> bool:
        """True when a cached handle exists and must be discarded before reuse."""
        if key not in self._handles:
            return False
        return self.policy.is_stale(self._last_active.get(key))

    async def acquire(self, key: str) -> SessionHandle | None:
        """Cached handle for `key`, evicting it first when stale."""
        if self.evaluate(key):
            logger.info(f"Session {key} is stale ({self.policy.mode}); resetting")
            await self.evict(key)
            return None
        return self._handles.get(key)

    async def put(self, key: str, handle: SessionHandle) -> None:
        previous = self._handles.get(key)
        self._handles[key] = handle
        self._last_active[key] = self._clock()
        if previous is not None and previous is not handle:
            await previous.dispose()

    def touch(self, key: str) -> None:
        if key in self._handles:
            self._last_active[key] = self._clock()

    async def evict(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        self._last_active.pop(key, None)
        if handle is None:
            return False
        await handle.dispose()
        logger.info(f"Session {key} evicted")
        return True

    def set_model_override(self, key: str, model: ModelRef | None) -> None:
        if model is None:
            self._model_overrides.pop(key, None)
        else:
            self._model_overrides[key] = model

    def get_model_override(self, key: str) -> ModelRef | None:
        return self._model_overrides.get(key)

    def keys(self) -> list[str]:
        return list(self._handles)

    def __len__(self) -> int:
        return len(self._handles)

    async def close(self) -> None:
        """Dispose every live handle."""
        keys = list(self._handles)
        for key in keys:
            handle = self._handles.pop(key, None)
            self._last_active.pop(key, None)
            if handle is None:
                continue
            try:
                await handle.dispose()
            except Exception as e:
                logger.warning(f"Failed to dispose session {key}: {e}")
        self._model_overrides.clear()

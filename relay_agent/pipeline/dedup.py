"""Sliding-window duplicate detection for inbound channel messages."""

from __future__ import annotations

import time
from typing import Callable

SWEEP_EVERY = 100


class DedupCache:
    """Remembers (channel, message id) pairs for `ttl_seconds`; swept lazily."""

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._seen: dict[tuple[str, str], float] = {}
        self._checks = 0

    def seen(self, channel_id: str | None, message_id: str | None) -> bool:
        """Record the pair and return True when it was already seen in the window."""
        if not channel_id or not message_id:
            return False
        now = self._clock()
        self._checks += 1
        if self._checks % SWEEP_EVERY == 0:
            self.sweep(now)

        key = (channel_id, message_id)
        first_seen = self._seen.get(key)
        if first_seen is not None and now - first_seen < self.ttl_seconds:
            return True
        self._seen[key] = now
        return False

    def sweep(self, now: float | None = None) -> int:
        current = self._clock() if now is None else now
        expired = [key for key, ts in self._seen.items() if current - ts >= self.ttl_seconds]
        for key in expired:
            del self._seen[key]
        return len(expired)

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)

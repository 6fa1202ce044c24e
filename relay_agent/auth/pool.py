"""Round-robin credential pool with reason-aware backoff and persisted cooldowns."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

if TYPE_CHECKING:
    from relay_agent.agent.errors import FailureReason

HOUR_S = 3600.0
FAILURE_WINDOW_S = 24 * HOUR_S


def compute_backoff(failures: int, reason: FailureReason | str | None) -> float:
    """Backoff in seconds after the `failures`-th consecutive failure.

    billing: 5h -> 10h -> 20h -> 24h cap; everything else: 1min -> 5min -> 25min -> 1h cap.
    """
    count = max(1, int(failures))
    if reason == "billing":
        return min(5 * HOUR_S * (2 ** (count - 1)), 24 * HOUR_S)
    return min(60.0 * (5 ** (count - 1)), HOUR_S)


def profile_id(provider: str, secret: str) -> str:
    """Persistence key for a credential; only the last six characters are kept."""
    return f"{provider}:{secret[-6:]}"


@dataclass
class CredentialEntry:
    """Health state of one credential."""

    secret: str
    failures: int = 0
    last_failure: float = 0.0
    backoff_until: float = 0.0
    last_reason: str | None = None

    @property
    def fingerprint(self) -> str:
        return f"…{self.secret[-6:]}"


class CooldownStore:
    """JSON file holding cooldowns keyed by `provider:last6`."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> dict[str, dict[str, Any]]:
        try:
            if not self.path.exists():
                return {}
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        profiles = payload.get("profiles") if isinstance(payload, dict) else None
        return profiles if isinstance(profiles, dict) else {}

    def get(self, key: str) -> dict[str, Any] | None:
        record = self.load().get(key)
        return record if isinstance(record, dict) else None

    def put(self, key: str, record: dict[str, Any]) -> bool:
        profiles = self.load()
        profiles[key] = record
        return self._write(profiles)

    def delete(self, key: str) -> bool:
        profiles = self.load()
        if key not in profiles:
            return True
        profiles.pop(key, None)
        return self._write(profiles)

    def _write(self, profiles: dict[str, dict[str, Any]]) -> bool:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps({"profiles": profiles}, indent=2), encoding="utf-8")
            tmp_path.replace(self.path)
            return True
        except OSError as e:
            logger.debug(f"Failed to save auth state: {e}")
            return False


class CredentialPool:
    """
    Per-provider credential rotation.

    `pick()` never blocks: when every credential is cooling down it returns the
    one whose backoff ends first.
    """

    def __init__(
        self,
        store: CooldownStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self._clock = clock
        self._pools: dict[str, list[CredentialEntry]] = {}

    def _pool(self, provider: str) -> list[CredentialEntry]:
        return self._pools.setdefault(provider, [])

    def _find(self, provider: str, secret: str) -> CredentialEntry | None:
        for entry in self._pool(provider):
            if entry.secret == secret:
                return entry
        return None

    @property
    def providers(self) -> list[str]:
        return [name for name, pool in self._pools.items() if pool]

    def add(self, provider: str, secret: str) -> bool:
        """Register a credential once, restoring any persisted cooldown."""
        secret = (secret or "").strip()
        if not secret or self._find(provider, secret) is not None:
            return False

        entry = CredentialEntry(secret=secret)
        record = self.store.get(profile_id(provider, secret)) if self.store else None
        if record:
            now = self._clock()
            cooldown_until = float(record.get("cooldownUntil", 0) or 0)
            last_error_at = float(record.get("lastErrorAt", 0) or 0)
            if cooldown_until > now:
                entry.backoff_until = cooldown_until
            if last_error_at and now - last_error_at < FAILURE_WINDOW_S:
                entry.failures = max(0, int(record.get("errorCount", 0) or 0))
                entry.last_failure = last_error_at
            entry.last_reason = record.get("lastReason") or None
        self._pool(provider).append(entry)
        return True

    def mark_failed(self, provider: str, secret: str | None, reason: FailureReason | str = "unknown") -> None:
        """Record a failure and push the credential's backoff out."""
        entry = self._find(provider, secret or "")
        if entry is None:
            return
        now = self._clock()
        entry.failures += 1
        entry.last_failure = now
        entry.last_reason = reason
        entry.backoff_until = max(entry.backoff_until, now + compute_backoff(entry.failures, reason))
        logger.debug(
            f"Credential {entry.fingerprint} for {provider} failed: {reason} "
            f"({entry.failures}x, backoff {entry.backoff_until - now:.0f}s)"
        )
        if self.store:
            self.store.put(
                profile_id(provider, entry.secret),
                {
                    "cooldownUntil": entry.backoff_until,
                    "errorCount": entry.failures,
                    "lastReason": reason,
                    "lastErrorAt": now,
                },
            )

    def mark_success(self, provider: str, secret: str | None) -> None:
        """Clear failures, backoff and the persisted cooldown."""
        entry = self._find(provider, secret or "")
        if entry is None:
            return
        had_state = entry.failures or entry.backoff_until or entry.last_reason
        entry.failures = 0
        entry.last_failure = 0.0
        entry.backoff_until = 0.0
        entry.last_reason = None
        if self.store and had_state:
            self.store.delete(profile_id(provider, entry.secret))

    def pick(self, provider: str) -> str | None:
        """Least-recently-used healthy credential, rotated to the tail."""
        pool = self._pool(provider)
        if not pool:
            return None
        now = self._clock()
        for index, entry in enumerate(pool):
            if entry.backoff_until <= now:
                pool.append(pool.pop(index))
                return entry.secret
        return min(pool, key=lambda item: item.backoff_until).secret

    def reset(self, provider: str) -> int:
        """Clear cooldowns for every credential of `provider`, including persisted ones."""
        pool = self._pool(provider)
        for entry in pool:
            entry.failures = 0
            entry.last_failure = 0.0
            entry.backoff_until = 0.0
            entry.last_reason = None
            if self.store:
                self.store.delete(profile_id(provider, entry.secret))
        return len(pool)

    def entry(self, provider: str, secret: str) -> CredentialEntry | None:
        return self._find(provider, secret)

    def entries(self, provider: str) -> list[CredentialEntry]:
        return list(self._pool(provider))

    def health(self, provider: str) -> dict[str, int]:
        pool = self._pool(provider)
        now = self._clock()
        healthy = sum(1 for entry in pool if entry.backoff_until <= now)
        return {"total": len(pool), "healthy": healthy, "backoff": len(pool) - healthy}

"""Credential discovery from config, auth profiles and environment."""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping

from loguru import logger

from relay_agent.auth.pool import CooldownStore, CredentialPool
from relay_agent.config.schema import Config
from relay_agent.utils.helpers import get_data_path

AUTH_STATE_FILE = "auth-state.json"


def default_cooldown_store() -> CooldownStore:
    return CooldownStore(get_data_path() / AUTH_STATE_FILE)


def load_provider_keys(
    config: Config,
    provider: str,
    environ: Mapping[str, str] | None = None,
) -> list[str]:
    """Collect every credential configured for a provider, in priority order."""
    env = os.environ if environ is None else environ
    name = (provider or "").strip().lower()
    candidates: list[str] = []

    provider_cfg = config.get_provider(name)
    if provider_cfg:
        candidates.append(provider_cfg.api_key)
        candidates.extend(provider_cfg.api_keys)

    env_prefix = name.upper().replace("-", "_")
    multi = env.get(f"{env_prefix}_API_KEYS", "")
    candidates.extend(part for part in multi.split(","))
    candidates.append(env.get(f"{env_prefix}_API_KEY", ""))

    for profile in config.auth.profiles.values():
        if profile.provider.strip().lower() != name:
            continue
        candidates.append(profile.api_key)
        if profile.env_var:
            candidates.append(env.get(profile.env_var, ""))

    keys: list[str] = []
    for raw in candidates:
        key = (raw or "").strip()
        if key and key not in keys:
            keys.append(key)
    return keys


def seed_pool(
    pool: CredentialPool,
    config: Config,
    providers: Iterable[str],
    environ: Mapping[str, str] | None = None,
) -> int:
    """Register discovered credentials for each provider; returns how many were new."""
    added = 0
    for provider in providers:
        keys = load_provider_keys(config, provider, environ)
        for key in keys:
            if pool.add(provider, key):
                added += 1
        if keys:
            logger.debug(f"Loaded {len(keys)} credential(s) for {provider}")
        else:
            logger.warning(
                f"No API key found for provider '{provider}'. "
                f"Set {provider.upper()}_API_KEY or providers.{provider}.apiKey in config."
            )
    return added

"""Credential rotation and discovery."""

from relay_agent.auth.keys import load_provider_keys, seed_pool
from relay_agent.auth.pool import CooldownStore, CredentialPool

__all__ = ["CooldownStore", "CredentialPool", "load_provider_keys", "seed_pool"]

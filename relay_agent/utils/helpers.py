"""Filesystem helpers shared across relay-agent modules."""

from __future__ import annotations

import os
import re
from pathlib import Path

PRIMARY_DATA_DIR = ".relay-agent"
DATA_DIR_ENV = "RELAY_AGENT_DATA_DIR"


def ensure_dir(path: Path) -> Path:
    """Create directory (and parents) if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Resolve the active data directory.

    `RELAY_AGENT_DATA_DIR` overrides the default `~/.relay-agent`; relative
    overrides are resolved against the home directory.
    """
    raw = os.environ.get(DATA_DIR_ENV, "").strip()
    home = Path.home()
    if raw:
        candidate = Path(raw).expanduser()
        if not candidate.is_absolute():
            candidate = home / candidate
    else:
        candidate = home / PRIMARY_DATA_DIR
    return ensure_dir(candidate)


def safe_filename(name: str) -> str:
    """Turn an arbitrary key into a filesystem-safe file stem."""
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", (name or "").strip())
    return cleaned.strip("._") or "default"

"""Inbound finalization: agent bindings, session keys, injection screening, prompt framing."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from relay_agent.config.schema import AgentBinding

DEFAULT_AGENT_ID = "default"
DEFAULT_ACCOUNT = "default"
SHARED_UNIT = "shared"
ISOLATION_MODES = ("per-group", "per-thread", "shared")

INJECTION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"ignore\s+(all\s+)?previous\s+instructions",
        r"you\s+are\s+now\s+(a|an)\s+",
        r"system\s*prompt\s*[:=]",
        r"\bDAN\b.*mode",
        r"jailbreak",
        r"bypass\s+(your\s+)?restrictions",
        r"override\s+(your\s+)?safety",
        r"pretend\s+you\s+(are|have)",
        r"act\s+as\s+(if|though)\s+you",
        r"forget\s+(your|all|previous)",
    )
)


def resolve_agent_binding(
    bindings: list[AgentBinding],
    channel_id: str | None,
    account_id: str | None = None,
    peer_id: str | None = None,
) -> str:
    """
    Agent id bound to (channel, account, peer).

    Empty binding fields are wildcards. The most specific match wins (peer
    beats account beats channel); ties go to the first binding listed.
    """
    best: AgentBinding | None = None
    best_score = -1
    for binding in bindings:
        if binding.channel and binding.channel != channel_id:
            continue
        if binding.account and binding.account != account_id:
            continue
        if binding.peer and binding.peer != peer_id:
            continue
        score = (4 if binding.peer else 0) + (2 if binding.account else 0) + (1 if binding.channel else 0)
        if score > best_score:
            best, best_score = binding, score
    return best.agent_id if best else DEFAULT_AGENT_ID


def build_session_key(agent_id: str, channel_id: str, account_id: str, unit: str) -> str:
    return f"{agent_id}:{channel_id}:{account_id}:{unit}"


def derive_session_key(
    *,
    agent_id: str | None,
    channel_id: str | None,
    account_id: str | None,
    peer_id: str | None,
    is_group: bool = False,
    thread_id: str | None = None,
    isolation: str = "per-group",
) -> str:
    """Deterministic session key for an inbound message."""
    if not channel_id:
        return peer_id or "cli"

    if is_group and thread_id and isolation == "per-thread":
        unit = f"{peer_id or 'unknown'}:{thread_id}"
    elif is_group and isolation == SHARED_UNIT:
        unit = SHARED_UNIT
    else:
        unit = peer_id or "unknown"
    return build_session_key(
        agent_id or DEFAULT_AGENT_ID,
        channel_id,
        account_id or DEFAULT_ACCOUNT,
        unit,
    )


def detect_injection(text: str) -> list[str]:
    """Patterns that matched; empty when the text looks benign."""
    return [pattern.pattern for pattern in INJECTION_PATTERNS if pattern.search(text or "")]


def wrap_untrusted(content: str, source: str) -> str:
    return f'<<<EXTERNAL_UNTRUSTED_CONTENT source="{source}">>>\n{content}\n<<<END_UNTRUSTED_CONTENT>>>'


def format_envelope(channel_id: str, sender: str, received_at: float, now: float) -> str:
    elapsed = max(0, round(now - received_at))
    stamp = datetime.fromtimestamp(received_at, tz=timezone.utc).strftime("%H:%M:%S")
    return f"[{channel_id} from {sender} +{elapsed}s {stamp}]"


def frame_prompt(
    body: str,
    *,
    media_urls: list[str] | None = None,
    envelope: str | None = None,
) -> str:
    """Prefix media references and the channel envelope onto the prompt body."""
    prompt = body
    if media_urls:
        media = "\n".join(f"[Media: {url}]" for url in media_urls)
        prompt = f"{media}\n\n{prompt}"
    if envelope:
        prompt = f"{envelope} {prompt}"
    return prompt

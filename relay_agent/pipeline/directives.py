"""Line-anchored `++key value` directives embedded in message bodies."""

from __future__ import annotations

import re

from relay_agent.pipeline.context import ParsedDirectives

DIRECTIVE_RE = re.compile(r"^\+\+(\w+)[ \t]+(\S+)[^\n]*(?:\n|$)", re.MULTILINE)

THINK_LEVELS = ("off", "low", "medium", "high")
EXEC_MODES = ("auto", "interactive", "deny")


def parse_directives(body: str) -> tuple[ParsedDirectives, str]:
    """
    Extract `++think`, `++model` and `++exec` lines from `body`.

    Returns the directives (last occurrence wins) and the body with every
    directive line removed. Bodies without a directive line come back untouched.
    """
    directives = ParsedDirectives()
    matches = list(DIRECTIVE_RE.finditer(body or ""))
    if not matches:
        return directives, body

    for match in matches:
        key = match.group(1).lower()
        value = match.group(2)
        if key == "think":
            if value.lower() in THINK_LEVELS:
                directives.think = value.lower()
        elif key == "model":
            directives.model = value
        elif key == "exec":
            if value.lower() in EXEC_MODES:
                directives.exec_approval = value.lower()

    return directives, DIRECTIVE_RE.sub("", body).strip()

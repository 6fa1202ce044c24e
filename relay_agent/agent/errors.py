"""Failure taxonomy for model calls and the terminal turn errors built on it."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from relay_agent.agent.session import SessionHandle

FailureReason = Literal["auth", "rate_limit", "billing", "timeout", "format", "unknown"]

FAILURE_REASONS: tuple[str, ...] = ("auth", "rate_limit", "billing", "timeout", "format", "unknown")

_BILLING_MARKERS = ("insufficient", "billing", "credit", "payment required")
_RATE_LIMIT_MARKERS = ("rate_limit", "rate limit", "too many requests", "quota exceeded")
_AUTH_MARKERS = (
    "unauthorized",
    "invalid_api_key",
    "invalid api key",
    "invalid x-api-key",
    "authentication",
    "permission denied",
)
_TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout", "econnreset", "econnaborted", "socket hang up")
_FORMAT_MARKERS = ("invalid_request", "malformed")
_OVERFLOW_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "context window",
    "token limit",
    "prompt is too long",
    "request too large",
    "max_tokens",
)
_REASONING_MARKERS = ("thinking", "reasoning_effort", "reasoning effort", "reasoning is not supported")


def error_message(error: Any) -> str:
    if isinstance(error, BaseException):
        message = str(error) or type(error).__name__
    else:
        message = str(error)
    return message


def error_status(error: Any) -> int | None:
    """HTTP-ish status from `status` or `status_code`, when present and numeric."""
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if value is None and isinstance(error, dict):
            value = error.get(attr)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def classify_failure(error: Any) -> FailureReason:
    """Map an opaque error to a failure reason. Pure; safe to call repeatedly."""
    status = error_status(error)
    msg = error_message(error).lower()

    if status == 402 or any(marker in msg for marker in _BILLING_MARKERS):
        return "billing"
    if status == 429 or any(marker in msg for marker in _RATE_LIMIT_MARKERS):
        return "rate_limit"
    if status in (401, 403) or any(marker in msg for marker in _AUTH_MARKERS):
        return "auth"
    if (
        status == 408
        or isinstance(error, (asyncio.TimeoutError, TimeoutError))
        or any(marker in msg for marker in _TIMEOUT_MARKERS)
    ):
        return "timeout"
    if any(marker in msg for marker in _FORMAT_MARKERS):
        return "format"
    return "unknown"


def is_context_overflow(error: Any) -> bool:
    msg = error_message(error).lower()
    return any(marker in msg for marker in _OVERFLOW_MARKERS)


def is_reasoning_rejection(error: Any) -> bool:
    msg = error_message(error).lower()
    return any(marker in msg for marker in _REASONING_MARKERS)


def describe_error(error: Any) -> str:
    if isinstance(error, TurnError):
        return str(error)
    if isinstance(error, BaseException):
        text = str(error)
        return text if text else type(error).__name__
    return str(error)


class TurnError(Exception):
    """A turn ended without a reply.

    `handle` is the session left live by the failed turn, if any.
    """

    def __init__(self, message: str, *, reason: str = "unknown", attempts: int = 0):
        super().__init__(message)
        self.reason = reason
        self.attempts = attempts
        self.handle: SessionHandle | None = None


class TurnAborted(TurnError):
    """The turn's cancellation token fired."""

    def __init__(self, message: str = "Turn aborted", *, attempts: int = 0):
        super().__init__(message, reason="aborted", attempts=attempts)


class FormatRejected(TurnError):
    """The provider rejected the request shape; retrying cannot help."""


class AuthenticationExhausted(TurnError):
    """Every model in the fallback chain failed with auth or billing errors."""


class RetriesExhausted(TurnError):
    """The shared retry ceiling was exceeded."""


class TurnFailed(TurnError):
    """Unrecoverable failure surfaced verbatim."""

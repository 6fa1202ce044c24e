import asyncio

import pytest

from relay_agent.agent.errors import (
    RetriesExhausted,
    TurnAborted,
    classify_failure,
    describe_error,
    error_status,
    is_context_overflow,
    is_reasoning_rejection,
)
from relay_agent.agent.models import ModelRef, build_fallback_chain, resolve_model


class _ApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (_ApiError("upstream says no", 402), "billing"),
        (_ApiError("Your credit balance is too low"), "billing"),
        (_ApiError("slow down", 429), "rate_limit"),
        (_ApiError("Rate limit reached for requests"), "rate_limit"),
        (_ApiError("nope", 401), "auth"),
        (_ApiError("forbidden", 403), "auth"),
        (_ApiError("invalid x-api-key"), "auth"),
        (_ApiError("request timeout", 408), "timeout"),
        (asyncio.TimeoutError(), "timeout"),
        (ConnectionError("ECONNRESET while reading"), "timeout"),
        (_ApiError("invalid_request_error: messages: malformed"), "format"),
        (RuntimeError("boom"), "unknown"),
        ({"status": "429", "message": "x"}, "rate_limit"),
    ],
)
def test_classify_failure(error, expected):
    assert classify_failure(error) == expected


def test_classify_failure_is_pure():
    error = _ApiError("too many requests", 429)
    assert [classify_failure(error) for _ in range(3)] == ["rate_limit"] * 3


def test_error_status_reads_attributes_and_mappings():
    assert error_status(_ApiError("x", 503)) == 503
    assert error_status({"status_code": 401}) == 401
    assert error_status(RuntimeError("x")) is None


def test_overflow_and_reasoning_detection():
    assert is_context_overflow(_ApiError("This model's maximum context length is 200000 tokens"))
    assert is_context_overflow(_ApiError("prompt is too long: 210000 tokens > 200000"))
    assert not is_context_overflow(_ApiError("rate limit"))
    assert is_reasoning_rejection(_ApiError("reasoning_effort is not supported for this model"))
    assert is_reasoning_rejection(_ApiError("thinking is not enabled"))
    assert not is_reasoning_rejection(_ApiError("bad gateway"))


def test_turn_errors_carry_reason_and_attempts():
    aborted = TurnAborted(attempts=2)
    assert aborted.reason == "aborted"
    assert aborted.attempts == 2
    exhausted = RetriesExhausted("exhausted retries after 4 attempts", reason="rate_limit", attempts=4)
    assert describe_error(exhausted) == "exhausted retries after 4 attempts"
    assert describe_error(ValueError()) == "ValueError"


def test_resolve_model_aliases_and_defaults():
    assert resolve_model("sonnet") == ModelRef("anthropic", "claude-sonnet-4-5")
    assert resolve_model("openai/gpt-4.1") == ModelRef("openai", "gpt-4.1")
    assert resolve_model("my-local-model", default_provider="vllm") == ModelRef("vllm", "my-local-model")
    assert resolve_model("fast", {"fast": "groq/llama-3.3-70b"}) == ModelRef("groq", "llama-3.3-70b")
    assert resolve_model("sonnet", {"sonnet": "openrouter/anthropic/claude"}).provider == "openrouter"
    with pytest.raises(ValueError):
        resolve_model("  ")


def test_fallback_chain_dedups_in_order():
    primary = ModelRef("anthropic", "claude-sonnet-4-5")
    chain = build_fallback_chain(primary, ["gpt4o", "sonnet", "", "deepseek"], lead=ModelRef("openai", "gpt-4o"))
    assert [ref.label for ref in chain] == [
        "openai/gpt-4o",
        "anthropic/claude-sonnet-4-5",
        "deepseek/deepseek-chat",
    ]

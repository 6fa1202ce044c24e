"""Resilient runner: one turn against an agent session with retry and model fallback."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from relay_agent.agent.errors import (
    AuthenticationExhausted,
    FormatRejected,
    RetriesExhausted,
    TurnAborted,
    TurnError,
    TurnFailed,
    classify_failure,
    describe_error,
    is_context_overflow,
    is_reasoning_rejection,
)
from relay_agent.agent.models import ModelRef, build_fallback_chain, resolve_model
from relay_agent.agent.pruning import truncate_oversized_tool_results
from relay_agent.agent.session import SessionFactory, SessionHandle, Usage
from relay_agent.auth.pool import CredentialPool
from relay_agent.utils.cancel import CancelToken

REASONING_LADDER: tuple[str, ...] = ("high", "medium", "low", "off")

RATE_LIMIT_BASE_S = 1.0
RATE_LIMIT_CAP_S = 30.0
TIMEOUT_BASE_S = 0.5
TIMEOUT_CAP_S = 5.0
JITTER = 0.1


@dataclass
class RunResult:
    text: str
    handle: SessionHandle
    attempts: int
    compacted: bool = False
    truncated: int = 0

    @property
    def model(self) -> ModelRef:
        return self.handle.model


class ResilientRunner:
    """
    Bounded retry state machine around `AgentSession.prompt`.

    Every recovery branch (backoff, truncation, compaction, reasoning downgrade,
    model switch) spends from one shared retry budget.
    """

    def __init__(
        self,
        factory: SessionFactory,
        pool: CredentialPool | None,
        *,
        primary: ModelRef,
        fallbacks: list[str] | None = None,
        aliases: dict[str, str] | None = None,
        max_retries: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.factory = factory
        self.pool = pool
        self.primary = primary
        self.fallbacks = list(fallbacks or [])
        self.aliases = dict(aliases or {})
        self.max_retries = max(0, int(max_retries))
        self._sleep = sleep
        self._rand = rand

    def resolve(self, text: str) -> ModelRef:
        return resolve_model(text, self.aliases, self.primary.provider)

    def fallback_chain(self, lead: ModelRef | None = None) -> list[ModelRef]:
        return build_fallback_chain(self.primary, self.fallbacks, self.aliases, lead=lead)

    async def run(
        self,
        *,
        prompt: str,
        session_key: str,
        handle: SessionHandle | None = None,
        model: ModelRef | None = None,
        reasoning: str = "off",
        exec_approval: str | None = None,
        agent_id: str | None = None,
        cancel: CancelToken | None = None,
        on_text: Callable[[str], Any] | None = None,
        on_reset: Callable[[], Any] | None = None,
    ) -> RunResult:
        """
        Run one turn to completion or raise a `TurnError`.

        `on_reset` fires when an attempt that streamed text fails, so callers
        can drop what that attempt produced. A raised `TurnError` carries the
        live handle in `handle` (or None when no session survived); the caller
        owns it from then on.
        """
        effective = model or (handle.model if handle else None) or self.primary
        chain = self.fallback_chain(lead=effective)
        chain_index = 0
        level = reasoning if reasoning in REASONING_LADDER else "off"

        current: SessionHandle | None = handle
        previous: SessionHandle | None = None
        usage = handle.usage if handle is not None else Usage()

        attempts = 0
        retries = 0
        overflows = 0
        truncated = 0
        compacted = False

        def spend_retry(reason: str, error: Exception) -> int:
            nonlocal retries
            retries += 1
            if retries > self.max_retries:
                raise RetriesExhausted(
                    f"exhausted retries after {attempts} attempts: {describe_error(error)}",
                    reason=reason,
                    attempts=attempts,
                ) from error
            return retries

        try:
            if current is not None and (current.model != effective or current.reasoning != level):
                await current.dispose()
                previous, current = current, None

            while True:
                self._check_cancel(cancel, attempts)
                if current is None:
                    current = await self._create(
                        session_key=session_key,
                        model=chain[chain_index],
                        reasoning=level,
                        exec_approval=exec_approval,
                        agent_id=agent_id,
                        usage=usage,
                        previous=previous,
                    )
                    previous = None

                attempts += 1
                parts: list[str] = []
                active = current

                def on_event(event: dict[str, Any]) -> None:
                    kind = event.get("type")
                    if kind == "text_delta":
                        delta = str(event.get("delta") or "")
                        if delta:
                            parts.append(delta)
                            if on_text:
                                on_text(delta)
                    elif kind == "usage":
                        active.usage.add(event)

                unsubscribe = active.session.subscribe(on_event)
                try:
                    await active.session.prompt(prompt)
                except Exception as exc:
                    error: Exception | None = exc
                else:
                    error = None
                finally:
                    unsubscribe()

                if error is None:
                    if self.pool:
                        self.pool.mark_success(active.model.provider, active.credential)
                    return RunResult(
                        text="".join(parts),
                        handle=active,
                        attempts=attempts,
                        compacted=compacted,
                        truncated=truncated,
                    )

                if parts and on_reset is not None:
                    on_reset()

                if cancel is not None and cancel.cancelled:
                    raise TurnAborted(attempts=attempts) from error

                if is_context_overflow(error):
                    spend_retry("context_overflow", error)
                    overflows += 1
                    count = 0
                    messages = getattr(active.session, "messages", None)
                    if overflows == 1 and isinstance(messages, list):
                        count = truncate_oversized_tool_results(messages)
                    if count:
                        truncated += count
                        logger.warning(f"Context overflow on {session_key}; truncated {count} tool result(s)")
                    else:
                        logger.warning(f"Context overflow on {session_key}; compacting")
                        await active.session.compact()
                        compacted = True
                    continue

                if is_reasoning_rejection(error):
                    if level == "off":
                        raise TurnFailed(
                            describe_error(error), reason=classify_failure(error), attempts=attempts
                        ) from error
                    spend_retry("reasoning", error)
                    level = REASONING_LADDER[REASONING_LADDER.index(level) + 1]
                    logger.warning(f"Reasoning level rejected on {active.model.label}; downgrading to {level}")
                    await active.dispose()
                    previous, current = active, None
                    continue

                reason = classify_failure(error)
                if reason == "format":
                    raise FormatRejected(describe_error(error), reason=reason, attempts=attempts) from error

                if reason == "rate_limit":
                    if self.pool:
                        self.pool.mark_failed(active.model.provider, active.credential, reason)
                    step = spend_retry(reason, error)
                    delay = min(RATE_LIMIT_BASE_S * (2 ** (step - 1)), RATE_LIMIT_CAP_S)
                    delay *= 1 + (self._rand() * 2 - 1) * JITTER
                    logger.warning(f"Rate limited on {active.model.label}; retry {step} in {delay:.2f}s")
                    await self._sleep(delay)
                    continue

                if reason == "timeout":
                    step = spend_retry(reason, error)
                    delay = min(TIMEOUT_BASE_S * (2 ** (step - 1)), TIMEOUT_CAP_S)
                    logger.warning(f"Timeout on {active.model.label}; retry {step} in {delay:.2f}s")
                    await self._sleep(delay)
                    continue

                if reason in ("auth", "billing"):
                    if self.pool:
                        self.pool.mark_failed(active.model.provider, active.credential, reason)
                    if chain_index + 1 >= len(chain):
                        raise AuthenticationExhausted(
                            f"all models failed authentication: {describe_error(error)}",
                            reason=reason,
                            attempts=attempts,
                        ) from error
                    spend_retry(reason, error)
                    chain_index += 1
                    logger.info(
                        f"{reason} failure on {active.model.label}; falling back to {chain[chain_index].label}"
                    )
                    await active.dispose()
                    previous, current = active, None
                    continue

                raise TurnFailed(describe_error(error), reason=reason, attempts=attempts) from error
        except TurnError as e:
            e.handle = _surviving(current)
            raise
        except Exception as e:
            # session creation, compaction or disposal failed outside a prompt
            failure = TurnFailed(describe_error(e), reason=classify_failure(e), attempts=attempts)
            failure.handle = _surviving(current)
            raise failure from e

    async def _create(
        self,
        *,
        session_key: str,
        model: ModelRef,
        reasoning: str,
        exec_approval: str | None,
        agent_id: str | None,
        usage: Usage,
        previous: SessionHandle | None = None,
    ) -> SessionHandle:
        credential = self.pool.pick(model.provider) if self.pool else None
        session = await self.factory(
            session_key=session_key,
            model=model,
            credential=credential,
            reasoning=reasoning,
            exec_approval=exec_approval,
            agent_id=agent_id,
        )
        if previous is not None:
            _carry_history(previous.session, session)
        logger.info(f"Session created for {session_key} on {model.label} (reasoning={reasoning})")
        return SessionHandle(
            session=session,
            model=model,
            credential=credential,
            reasoning=reasoning,
            agent_id=agent_id,
            usage=usage,
        )

    @staticmethod
    def _check_cancel(cancel: CancelToken | None, attempts: int) -> None:
        if cancel is not None and cancel.cancelled:
            raise TurnAborted(attempts=attempts)


def _carry_history(old_session: Any, new_session: Any) -> None:
    """Seed a replacement session with its predecessor's transcript, when both expose one."""
    old = getattr(old_session, "messages", None)
    new = getattr(new_session, "messages", None)
    if isinstance(old, list) and isinstance(new, list) and not new:
        new.extend(old)


def _surviving(current: SessionHandle | None) -> SessionHandle | None:
    if current is None or current.disposed:
        return None
    return current

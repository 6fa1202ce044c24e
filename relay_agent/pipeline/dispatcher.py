"""Dispatch pipeline: one inbound event in, one reply out."""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import random
import time
from time import perf_counter
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger

from relay_agent.agent.errors import TurnAborted, TurnError, classify_failure, describe_error
from relay_agent.agent.models import ModelRef, resolve_model
from relay_agent.agent.registry import SessionRegistry, StalenessPolicy
from relay_agent.agent.runner import ResilientRunner, RunResult
from relay_agent.agent.session import SessionFactory, SessionHandle
from relay_agent.auth.pool import CredentialPool
from relay_agent.config.schema import Config
from relay_agent.observability.metrics import MetricsStore
from relay_agent.pipeline.chunking import chunk_reply
from relay_agent.pipeline.coalescer import BlockCoalescer
from relay_agent.pipeline.commands import SkillResolver, parse_command, run_command
from relay_agent.pipeline.context import InboundEvent, MessageContext, PipelineResult
from relay_agent.pipeline.debounce import Debouncer
from relay_agent.pipeline.dedup import DedupCache
from relay_agent.pipeline.delivery import SendText, TypingController, deliver_chunks
from relay_agent.pipeline.directives import parse_directives
from relay_agent.pipeline.hooks import HookRegistry
from relay_agent.pipeline.inbound import (
    derive_session_key,
    detect_injection,
    format_envelope,
    frame_prompt,
    resolve_agent_binding,
    wrap_untrusted,
)
from relay_agent.utils.cancel import CancelToken
from relay_agent.utils.timers import AsyncioScheduler, Scheduler

if TYPE_CHECKING:
    from relay_agent.channels.base import BaseChannel

ERROR_PREFIX = "Sorry, I encountered an error:"

Synthesizer = Callable[[str], Awaitable[bytes]]
_CollectPayload = tuple[InboundEvent, "asyncio.Future[PipelineResult]"]


class Dispatcher:
    """
    Owns the per-process registries (dedup, collect buffers, sessions,
    credentials, in-flight turns) and runs every inbound event through them.

    `dispatch()` never raises; failures come back as `PipelineResult.error`.
    """

    def __init__(
        self,
        config: Config,
        session_factory: SessionFactory,
        pool: CredentialPool | None = None,
        registry: SessionRegistry | None = None,
        channels: dict[str, BaseChannel] | None = None,
        scheduler: Scheduler | None = None,
        hooks: HookRegistry | None = None,
        metrics: MetricsStore | None = None,
        skill_resolver: SkillResolver | None = None,
        synthesizer: Synthesizer | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.pool = pool if pool is not None else CredentialPool()
        self.registry = registry or SessionRegistry(
            StalenessPolicy(
                config.session.reset_mode,
                config.session.reset_at_hour,
                config.session.idle_minutes,
                clock=clock,
            ),
            clock=clock,
        )
        self.channels: dict[str, BaseChannel] = dict(channels or {})
        self.scheduler = scheduler or AsyncioScheduler()
        self.hooks = hooks or HookRegistry()
        self.metrics = metrics
        self.skill_resolver = skill_resolver
        self.synthesizer = synthesizer
        self._sleep = sleep
        self._rand = rand
        self._clock = clock

        agent = config.agent
        self.runner = ResilientRunner(
            session_factory,
            self.pool,
            primary=resolve_model(agent.model, agent.aliases, agent.provider),
            fallbacks=agent.fallbacks,
            aliases=agent.aliases,
            max_retries=agent.max_retries,
            sleep=sleep,
            rand=rand,
        )
        self.dedup = DedupCache(config.pipeline.dedup_ttl_s, clock=clock)
        self.debouncer: Debouncer[_CollectPayload] = Debouncer(
            self.scheduler,
            config.pipeline.collect_window_ms / 1000.0,
            self._on_collect_flush,
        )
        self._turns: dict[str, set[CancelToken]] = {}
        self._tasks: set[asyncio.Task] = set()

    def register_channel(self, channel: BaseChannel) -> None:
        channel.dispatcher = self
        self.channels[channel.name] = channel

    # ── entry point ──

    async def dispatch(self, event: InboundEvent) -> PipelineResult:
        ctx: MessageContext | None = None
        try:
            if not event.collected and self.dedup.seen(event.channel_id, event.message_id):
                logger.debug(f"Duplicate message {event.channel_id}:{event.message_id} dropped")
                return PipelineResult()

            if self._should_collect(event):
                return await self._collect(event)

            ctx = MessageContext.from_event(event, received_at=self._clock())
            if event.source == "channel" and event.channel_id:
                ctx.channel = self.channels.get(event.channel_id)
            return await self._process(ctx)
        except TurnAborted as e:
            key = ctx.session_key if ctx else ""
            logger.info(f"Turn aborted for {key}")
            return PipelineResult(session_key=key, aborted=True, attempts=e.attempts)
        except Exception as e:
            return await self._fail(ctx, e)

    async def _fail(self, ctx: MessageContext | None, error: Exception) -> PipelineResult:
        message = describe_error(error)
        key = ctx.session_key if ctx else ""
        reason = getattr(error, "reason", "unknown")
        logger.error(f"Dispatch failed for {key or 'unknown session'}: {message}")
        await self.hooks.run("error", {"session_key": key, "error": message, "reason": reason})

        if ctx is not None and ctx.source == "channel":
            send = self._sender(ctx)
            if send is not None:
                try:
                    await send(f"{ERROR_PREFIX} {message}")
                except Exception as e:
                    logger.error(f"Failed to deliver error notice to {ctx.peer_id}: {e}")
        return PipelineResult(
            session_key=key,
            error=message,
            attempts=getattr(error, "attempts", 0),
        )

    # ── collect mode ──

    def _should_collect(self, event: InboundEvent) -> bool:
        return (
            event.source == "channel"
            and not event.collected
            and self.config.pipeline.collect_mode == "collect"
        )

    async def _collect(self, event: InboundEvent) -> PipelineResult:
        future: asyncio.Future[PipelineResult] = asyncio.get_running_loop().create_future()
        key = f"{event.channel_id}:{event.peer_id}"
        self.debouncer.push(key, event.body, (event, future))
        return await future

    def _on_collect_flush(self, key: str, bodies: list[str], payloads: list[_CollectPayload]) -> None:
        events = [item[0] for item in payloads]
        futures = [item[1] for item in payloads]
        merged = dataclasses.replace(
            events[-1],
            body="\n".join(bodies),
            media_urls=[url for item in events for url in item.media_urls],
            collected=True,
        )
        for future in futures[:-1]:
            if not future.done():
                future.set_result(PipelineResult(merged=True))
        if len(bodies) > 1:
            logger.info(f"Collected {len(bodies)} messages for {key}")
        self._spawn(self._dispatch_collected(merged, futures[-1]))

    async def _dispatch_collected(
        self, event: InboundEvent, future: asyncio.Future[PipelineResult]
    ) -> None:
        try:
            result = await self.dispatch(event)
        except asyncio.CancelledError:
            if not future.done():
                future.set_result(PipelineResult(aborted=True))
            raise
        if not future.done():
            future.set_result(result)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda done_task: self._tasks.discard(done_task))
        return task

    # ── stages ──

    def _finalize_inbound(self, ctx: MessageContext) -> None:
        if ctx.channel_id:
            ctx.agent_id = resolve_agent_binding(
                self.config.bindings, ctx.channel_id, ctx.account_id, ctx.peer_id
            )
        ctx.session_key = derive_session_key(
            agent_id=ctx.agent_id,
            channel_id=ctx.channel_id,
            account_id=ctx.account_id,
            peer_id=ctx.peer_id,
            is_group=ctx.is_group,
            thread_id=ctx.thread_id,
            isolation=self.config.channels.defaults.group_isolation,
        )
        ctx.body = ctx.body.strip()

        patterns = detect_injection(ctx.body)
        if patterns:
            ctx.injection_warning = True
            ctx.body = wrap_untrusted(ctx.body, ctx.channel_id or ctx.source)
            logger.warning(f"Injection patterns from {ctx.peer_id or ctx.source}: {', '.join(patterns)}")

    async def _process(self, ctx: MessageContext) -> PipelineResult:
        self._finalize_inbound(ctx)

        data = {
            "session_key": ctx.session_key,
            "source": ctx.source,
            "channel_id": ctx.channel_id,
            "peer_id": ctx.peer_id,
            "body": ctx.body,
            "injection_warning": ctx.injection_warning,
        }
        abort = await self.hooks.run("message_inbound", data)
        if abort is not None:
            message = str(abort.get("message") or "")
            logger.info(f"Inbound hook aborted turn for {ctx.session_key}")
            result = await self._respond(ctx, message) if message else PipelineResult(session_key=ctx.session_key)
            result.aborted = True
            return result
        ctx.body = str(data.get("body", ctx.body))

        ctx.directives, ctx.body = parse_directives(ctx.body)
        command = parse_command(ctx.body)
        if command is not None:
            ctx.command = command
            outcome = await run_command(self, ctx, command, self.skill_resolver)
            if outcome.reply is not None:
                return await self._respond(ctx, outcome.reply)
            if outcome.body is not None:
                ctx.body = outcome.body

        if not ctx.body and not ctx.media_urls:
            return PipelineResult(session_key=ctx.session_key)
        return await self._orchestrate(ctx)

    async def _orchestrate(self, ctx: MessageContext) -> PipelineResult:
        key = ctx.session_key
        handle = await self.registry.acquire(key)

        model: ModelRef | None
        if ctx.directives.model:
            model = self.runner.resolve(ctx.directives.model)
        else:
            model = self.registry.get_model_override(key)
        if handle is not None and model is not None and handle.model != model:
            await self.registry.evict(key)
            handle = None

        reasoning = ctx.directives.think or (handle.reasoning if handle else self.config.agent.reasoning)
        exec_approval = ctx.directives.exec_approval or self.config.agent.exec_approval

        envelope = None
        if ctx.source == "channel" and ctx.channel_id and self.config.pipeline.envelope:
            envelope = format_envelope(
                ctx.channel_id, ctx.peer_name or ctx.peer_id or "unknown", ctx.received_at, self._clock()
            )
        prompt = frame_prompt(ctx.body, media_urls=ctx.media_urls, envelope=envelope)

        send = self._sender(ctx)
        blocks: list[str] = []
        coalescer = self._block_coalescer(ctx, send, blocks) if send is not None else None
        typing = self._typing_controller(ctx)
        if typing is not None:
            typing.start()

        self._turns.setdefault(key, set()).add(ctx.cancel)
        await self.hooks.run("turn_start", {"session_key": key, "agent_id": ctx.agent_id})
        started = perf_counter()
        result: RunResult | None = None
        try:
            result = await self.runner.run(
                prompt=prompt,
                session_key=key,
                handle=handle,
                model=model,
                reasoning=reasoning,
                exec_approval=exec_approval,
                agent_id=ctx.agent_id,
                cancel=ctx.cancel,
                on_text=coalescer.push if coalescer else None,
                on_reset=coalescer.clear if coalescer else None,
            )
        except TurnError as e:
            await self._keep_survivor(key, e.handle)
            self._record_turn(ctx, model, started, success=False, attempts=e.attempts, reason=e.reason, error=str(e))
            raise
        except Exception as e:
            self._record_turn(
                ctx, model, started, success=False, attempts=0, reason=classify_failure(e), error=describe_error(e)
            )
            raise
        finally:
            if result is None and coalescer is not None:
                coalescer.clear()
            if typing is not None:
                typing.seal()
            tokens = self._turns.get(key)
            if tokens is not None:
                tokens.discard(ctx.cancel)
                if not tokens:
                    self._turns.pop(key, None)

        await self.registry.put(key, result.handle)
        self._record_turn(ctx, result.model, started, success=True, attempts=result.attempts)
        await self.hooks.run(
            "turn_end", {"session_key": key, "model": result.model.label, "attempts": result.attempts}
        )

        if coalescer is not None:
            await coalescer.finish()

        data = {"session_key": key, "reply": result.text.strip(), "channel_id": ctx.channel_id}
        await self.hooks.run("message_outbound", data)
        reply = str(data.get("reply") or "")

        if ctx.cancel.cancelled:
            logger.info(f"Turn for {key} cancelled before delivery")
            return PipelineResult(session_key=key, reply=reply, aborted=True, attempts=result.attempts)

        if coalescer is not None:
            chunks = blocks
        else:
            chunks = chunk_reply(reply, self._max_chunk(ctx), self.config.pipeline.chunk_min)
            if send is not None and chunks:
                await self._deliver(ctx, send, chunks)

        await self._synthesize(ctx, reply)
        return PipelineResult(
            session_key=key,
            reply=reply,
            chunks=chunks,
            aborted=ctx.cancel.cancelled,
            attempts=result.attempts,
        )

    async def _keep_survivor(self, key: str, survivor: SessionHandle | None) -> None:
        """Cache the session a failed turn left live, or drop a cached handle it disposed."""
        if survivor is not None:
            await self.registry.put(key, survivor)
            return
        cached = self.registry.get(key)
        if cached is not None and cached.disposed:
            await self.registry.evict(key)

    # ── outbound ──

    def _sender(self, ctx: MessageContext) -> SendText | None:
        channel = ctx.channel
        if channel is not None:
            peer_id = ctx.peer_id or ""
            account_id = ctx.account_id

            async def send_channel(text: str) -> None:
                await channel.send_text(peer_id, text, account_id)

            return send_channel

        callback = ctx.on_chunk
        if callback is not None:

            async def send_callback(text: str) -> None:
                result = callback(text)
                if inspect.isawaitable(result):
                    await result

            return send_callback
        return None

    def _max_chunk(self, ctx: MessageContext) -> int:
        limit = self.config.pipeline.chunk_max
        if ctx.channel is not None:
            limit = min(limit, ctx.channel.capabilities.max_text_length)
        return max(1, limit)

    async def _deliver(self, ctx: MessageContext, send: SendText, chunks: list[str]) -> int:
        pipeline = self.config.pipeline
        paced = ctx.channel is not None
        sent = await deliver_chunks(
            send,
            chunks,
            prefix=self.config.agent.response_prefix,
            delay_min_ms=pipeline.delivery_delay_min_ms if paced else 0,
            delay_max_ms=pipeline.delivery_delay_max_ms if paced else 0,
            cancel=ctx.cancel,
            sleep=self._sleep,
            rand=self._rand,
        )
        if self.metrics is not None:
            self.metrics.record_delivery(
                channel=ctx.channel_id or ctx.source,
                chunks=len(chunks),
                sent=sent,
            )
        return sent

    async def _respond(self, ctx: MessageContext, text: str) -> PipelineResult:
        """Reply without running a turn (commands, hook aborts)."""
        chunks = chunk_reply(text, self._max_chunk(ctx), 0)
        send = self._sender(ctx)
        if send is not None and chunks:
            await self._deliver(ctx, send, chunks)
        return PipelineResult(session_key=ctx.session_key, reply=text, chunks=chunks)

    def _block_coalescer(
        self, ctx: MessageContext, send: SendText, blocks: list[str]
    ) -> BlockCoalescer | None:
        pipeline = self.config.pipeline
        if not pipeline.block_streaming:
            return None
        prefix = self.config.agent.response_prefix

        async def flush(block: str) -> None:
            if ctx.cancel.cancelled:
                return
            text = f"{prefix}{block}" if prefix and not blocks else block
            blocks.append(block)
            await send(text)

        return BlockCoalescer(
            self._max_chunk(ctx),
            flush,
            self.scheduler,
            idle_seconds=pipeline.coalesce_idle_ms / 1000.0,
        )

    def _typing_controller(self, ctx: MessageContext) -> TypingController | None:
        channel = ctx.channel
        if channel is None or not self.config.pipeline.typing_indicator:
            return None
        peer_id = ctx.peer_id or ""
        account_id = ctx.account_id
        return TypingController(
            lambda: channel.send_typing(peer_id, account_id),
            self.scheduler,
            refresh_seconds=self.config.pipeline.typing_refresh_s,
            ttl_seconds=self.config.pipeline.typing_ttl_s,
        )

    async def _synthesize(self, ctx: MessageContext, reply: str) -> None:
        if not reply or ctx.on_audio is None or self.synthesizer is None:
            return
        try:
            audio = await self.synthesizer(reply)
            result = ctx.on_audio(audio)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Speech synthesis failed for {ctx.session_key}: {e}")

    def _record_turn(
        self,
        ctx: MessageContext,
        model: ModelRef | None,
        started: float,
        *,
        success: bool,
        attempts: int,
        reason: str = "",
        error: str = "",
    ) -> None:
        if self.metrics is None:
            return
        self.metrics.record_turn(
            session_key=ctx.session_key,
            model=(model or self.runner.primary).label,
            success=success,
            latency_ms=(perf_counter() - started) * 1000.0,
            attempts=attempts,
            reason=reason,
            error=error,
        )

    # ── control ──

    def cancel_turns(self, session_key: str, reason: str = "stop") -> int:
        """Cancel every in-flight turn for `session_key`; returns how many."""
        tokens = list(self._turns.get(session_key, ()))
        for token in tokens:
            token.cancel(reason)
        if tokens:
            logger.info(f"Cancelled {len(tokens)} turn(s) for {session_key}")
        return len(tokens)

    def in_flight(self, session_key: str) -> int:
        return len(self._turns.get(session_key, ()))

    async def shutdown(self) -> None:
        """Cancel pending work and dispose every live session."""
        for _, future in self.debouncer.cancel_all():
            if not future.done():
                future.set_result(PipelineResult(aborted=True))
        for tokens in self._turns.values():
            for token in tokens:
                token.cancel("shutdown")
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.registry.close()
        logger.info("Dispatcher shut down")

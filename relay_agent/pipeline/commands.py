"""Slash commands handled before a turn reaches the agent."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

from loguru import logger

from relay_agent.pipeline.context import MessageContext, ParsedCommand

if TYPE_CHECKING:
    from relay_agent.pipeline.dispatcher import Dispatcher

COMMAND_RE = re.compile(r"^/([A-Za-z][\w-]*)(?:[ \t]+(.*))?$", re.DOTALL)

SkillResolver = Callable[[str, str, MessageContext], Awaitable[str | None]]
CommandHandler = Callable[["Dispatcher", MessageContext, str], Awaitable[str]]


def parse_command(body: str) -> ParsedCommand | None:
    text = (body or "").strip()
    match = COMMAND_RE.match(text)
    if not match:
        return None
    return ParsedCommand(name=match.group(1).lower(), args=(match.group(2) or "").strip())


@dataclass
class CommandOutcome:
    """`reply` short-circuits the turn; otherwise `body` (maybe rewritten) continues."""

    reply: str | None = None
    body: str | None = None


async def _cmd_reset(dispatcher: Dispatcher, ctx: MessageContext, args: str) -> str:
    existed = await dispatcher.registry.evict(ctx.session_key)
    dispatcher.registry.set_model_override(ctx.session_key, None)
    return "Session reset." if existed else "Started a new session."


async def _cmd_stop(dispatcher: Dispatcher, ctx: MessageContext, args: str) -> str:
    stopped = dispatcher.cancel_turns(ctx.session_key, reason="stop")
    return f"Stopped {stopped} running turn(s)." if stopped else "Nothing to stop."


async def _cmd_compact(dispatcher: Dispatcher, ctx: MessageContext, args: str) -> str:
    handle = dispatcher.registry.get(ctx.session_key)
    if handle is None:
        return f"No active session for {ctx.session_key}"
    stats = await handle.session.compact(args or None)
    dispatcher.registry.touch(ctx.session_key)
    before = stats.get("before") if isinstance(stats, dict) else None
    after = stats.get("after") if isinstance(stats, dict) else None
    if before is not None and after is not None:
        return f"Compacted session: {before} -> {after} messages."
    return "Compacted session."


async def _cmd_model(dispatcher: Dispatcher, ctx: MessageContext, args: str) -> str:
    if not args:
        override = dispatcher.registry.get_model_override(ctx.session_key)
        handle = dispatcher.registry.get(ctx.session_key)
        current = override or (handle.model if handle else None) or dispatcher.runner.primary
        return f"Model: {current.label}"
    try:
        model = dispatcher.runner.resolve(args)
    except ValueError as e:
        return f"Invalid model: {e}"
    dispatcher.registry.set_model_override(ctx.session_key, model)
    return f"Model set to {model.label}"


async def _cmd_status(dispatcher: Dispatcher, ctx: MessageContext, args: str) -> str:
    handle = dispatcher.registry.get(ctx.session_key)
    if handle is None:
        return f"No active session for {ctx.session_key}"
    usage = handle.usage
    return (
        f"Session: {ctx.session_key}\n"
        f"Agent: {handle.agent_id or 'default'}\n"
        f"Model: {handle.model.label}\n"
        f"Tokens: {usage.total} (in: {usage.input}, out: {usage.output}, "
        f"cache-r: {usage.cache_read}, cache-w: {usage.cache_write})"
    )


COMMANDS: dict[str, CommandHandler] = {
    "new": _cmd_reset,
    "reset": _cmd_reset,
    "stop": _cmd_stop,
    "compact": _cmd_compact,
    "model": _cmd_model,
    "status": _cmd_status,
}


async def run_command(
    dispatcher: Dispatcher,
    ctx: MessageContext,
    command: ParsedCommand,
    skill_resolver: SkillResolver | None = None,
) -> CommandOutcome:
    handler = COMMANDS.get(command.name)
    if handler is not None:
        logger.info(f"Command /{command.name} on {ctx.session_key}")
        return CommandOutcome(reply=await handler(dispatcher, ctx, command.args))

    if skill_resolver is not None:
        rewritten = await skill_resolver(command.name, command.args, ctx)
        if rewritten:
            logger.info(f"Skill /{command.name} resolved on {ctx.session_key}")
            return CommandOutcome(body=rewritten)
    return CommandOutcome()

"""Default agent session: streamed chat completions through LiteLLM."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from litellm import acompletion
from loguru import logger

from relay_agent.agent.models import ModelRef
from relay_agent.agent.session import SessionListener
from relay_agent.config.schema import Config
from relay_agent.utils.helpers import ensure_dir, get_data_path, safe_filename

# Provider names that LiteLLM routes under a different prefix.
LITELLM_PREFIXES = {"vllm": "hosted_vllm"}

KEEP_RECENT_MESSAGES = 4

COMPACT_INSTRUCTIONS = (
    "Summarize the conversation so far for your own future reference. "
    "Keep names, decisions, open tasks and facts the user stated. Be concise."
)


def litellm_model_name(model: ModelRef) -> str:
    return f"{LITELLM_PREFIXES.get(model.provider, model.provider)}/{model.model_id}"


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class LiteLLMSession:
    """
    Conversation state plus one streamed completion per prompt.

    `messages` holds the live transcript (without the system prompt) and may be
    edited in place, e.g. to truncate oversized tool results.
    """

    def __init__(
        self,
        *,
        session_key: str,
        model: ModelRef,
        api_key: str | None = None,
        api_base: str | None = None,
        reasoning: str = "off",
        system_prompt: str = "",
        max_tokens: int = 4096,
        transcript_path: Path | None = None,
    ):
        self.session_key = session_key
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.reasoning = reasoning
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.transcript_path = transcript_path
        self.messages: list[dict[str, Any]] = []
        self._listeners: list[SessionListener] = []
        self._disposed = False

    def subscribe(self, callback: SessionListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Session listener failed: {e}")

    def _request_kwargs(self, messages: list[dict[str, Any]]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": litellm_model_name(self.model),
            "messages": messages,
            "max_tokens": self.max_tokens,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        return kwargs

    def _with_system(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not self.system_prompt:
            return list(messages)
        return [{"role": "system", "content": self.system_prompt}, *messages]

    async def prompt(self, text: str) -> None:
        if self._disposed:
            raise RuntimeError(f"session {self.session_key} is disposed")

        mark = len(self.messages)
        self.messages.append({"role": "user", "content": text})
        kwargs = self._request_kwargs(self._with_system(self.messages))
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}
        if self.reasoning != "off":
            kwargs["reasoning_effort"] = self.reasoning

        parts: list[str] = []
        try:
            stream = await acompletion(**kwargs)
            async for chunk in stream:
                choices = _get(chunk, "choices") or []
                if choices:
                    delta = _get(_get(choices[0], "delta"), "content")
                    if delta:
                        parts.append(delta)
                        self._emit({"type": "text_delta", "delta": delta})
                usage = _get(chunk, "usage")
                if usage:
                    self._emit(
                        {
                            "type": "usage",
                            "input": int(_get(usage, "prompt_tokens", 0) or 0),
                            "output": int(_get(usage, "completion_tokens", 0) or 0),
                            "cache_read": int(_get(usage, "cache_read_input_tokens", 0) or 0),
                            "cache_write": int(_get(usage, "cache_creation_input_tokens", 0) or 0),
                        }
                    )
        except Exception:
            del self.messages[mark:]
            raise

        reply = "".join(parts)
        self.messages.append({"role": "assistant", "content": reply})
        self._append_transcript(self.messages[mark:])

    async def compact(self, instructions: str | None = None) -> dict[str, Any]:
        """Replace all but the most recent messages with a model-written summary."""
        before = len(self.messages)
        if before <= KEEP_RECENT_MESSAGES:
            return {"before": before, "after": before, "summarized": 0}

        older = self.messages[:-KEEP_RECENT_MESSAGES]
        recent = self.messages[-KEEP_RECENT_MESSAGES:]
        transcript = "\n".join(f"{m.get('role')}: {m.get('content')}" for m in older)
        request = [
            {"role": "system", "content": instructions or COMPACT_INSTRUCTIONS},
            {"role": "user", "content": transcript},
        ]
        response = await acompletion(**self._request_kwargs(request))
        choices = _get(response, "choices") or []
        summary = _get(_get(choices[0], "message"), "content", "") if choices else ""

        self.messages[:] = [
            {"role": "user", "content": f"[Summary of earlier conversation]\n{summary or ''}".strip()},
            {"role": "assistant", "content": "Understood."},
            *recent,
        ]
        logger.info(f"Compacted session {self.session_key}: {before} -> {len(self.messages)} messages")
        return {"before": before, "after": len(self.messages), "summarized": len(older)}

    async def dispose(self) -> None:
        self._disposed = True
        self._listeners.clear()

    def _append_transcript(self, messages: list[dict[str, Any]]) -> None:
        if not self.transcript_path:
            return
        ts = datetime.now().isoformat(timespec="seconds")
        try:
            ensure_dir(self.transcript_path.parent)
            with self.transcript_path.open("a", encoding="utf-8") as handle:
                for message in messages:
                    record = {"ts": ts, "model": self.model.label, **message}
                    handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning(f"Failed to append transcript for {self.session_key}: {e}")


class LiteLLMSessionFactory:
    """Creates `LiteLLMSession` objects from config."""

    def __init__(self, config: Config, transcript_dir: Path | None = None):
        self.config = config
        self.transcript_dir = transcript_dir if transcript_dir is not None else get_data_path() / "sessions"

    async def __call__(
        self,
        *,
        session_key: str,
        model: ModelRef,
        credential: str | None,
        reasoning: str,
        exec_approval: str | None = None,
        agent_id: str | None = None,
    ) -> LiteLLMSession:
        provider_cfg = self.config.get_provider(model.provider)
        return LiteLLMSession(
            session_key=session_key,
            model=model,
            api_key=credential,
            api_base=provider_cfg.api_base if provider_cfg else None,
            reasoning=reasoning,
            system_prompt=self.config.agent.system_prompt,
            max_tokens=self.config.agent.max_tokens,
            transcript_path=self.transcript_dir / f"{safe_filename(session_key)}.jsonl",
        )

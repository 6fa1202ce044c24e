"""Model references, aliases and fallback chains."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_PROVIDER = "anthropic"

MODEL_ALIASES: dict[str, str] = {
    "sonnet": "anthropic/claude-sonnet-4-5",
    "opus": "anthropic/claude-opus-4-1",
    "haiku": "anthropic/claude-haiku-4-5",
    "gpt4o": "openai/gpt-4o",
    "gpt4": "openai/gpt-4o",
    "o3": "openai/o3",
    "deepseek": "deepseek/deepseek-chat",
}


@dataclass(frozen=True)
class ModelRef:
    provider: str
    model_id: str

    @property
    def label(self) -> str:
        return f"{self.provider}/{self.model_id}"

    def __str__(self) -> str:
        return self.label


def resolve_model(
    text: str,
    aliases: dict[str, str] | None = None,
    default_provider: str = DEFAULT_PROVIDER,
) -> ModelRef:
    """
    Resolve an alias, `provider/model` or bare model id.

    User aliases shadow the built-in table. Bare ids use `default_provider`.
    """
    value = (text or "").strip()
    if not value:
        raise ValueError("model reference is empty")

    table = {**MODEL_ALIASES, **{k.lower(): v for k, v in (aliases or {}).items()}}
    target = table.get(value.lower(), value)

    if "/" in target:
        provider, model_id = target.split("/", 1)
        provider = provider.strip().lower()
        model_id = model_id.strip()
        if provider and model_id:
            return ModelRef(provider, model_id)
    return ModelRef(default_provider, target)


def build_fallback_chain(
    primary: ModelRef,
    fallbacks: list[str] | None = None,
    aliases: dict[str, str] | None = None,
    lead: ModelRef | None = None,
) -> list[ModelRef]:
    """`lead` (if any), then primary, then fallbacks; duplicates dropped in order."""
    chain: list[ModelRef] = []
    candidates: list[ModelRef] = []
    if lead is not None:
        candidates.append(lead)
    candidates.append(primary)
    for entry in fallbacks or []:
        try:
            candidates.append(resolve_model(entry, aliases, primary.provider))
        except ValueError:
            continue
    for ref in candidates:
        if ref not in chain:
            chain.append(ref)
    return chain

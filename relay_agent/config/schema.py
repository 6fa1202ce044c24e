"""Configuration schema using Pydantic."""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentConfig(BaseModel):
    """Model selection and turn behaviour."""
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5"
    fallbacks: list[str] = Field(default_factory=list)  # aliases or provider/model
    aliases: dict[str, str] = Field(default_factory=dict)  # merged over built-in aliases
    reasoning: str = "off"  # off | low | medium | high
    exec_approval: str = "auto"  # auto | interactive | deny
    max_retries: int = 3
    response_prefix: str = ""
    system_prompt: str = ""
    max_tokens: int = 4096


class PipelineConfig(BaseModel):
    """Inbound batching and outbound shaping."""
    collect_mode: str = "off"  # off | collect
    collect_window_ms: int = 3000
    envelope: bool = True
    typing_indicator: bool = True
    typing_refresh_s: float = 6.0
    typing_ttl_s: float = 120.0
    chunk_min: int = 800
    chunk_max: int = 1200
    delivery_delay_min_ms: int = 800
    delivery_delay_max_ms: int = 2500
    dedup_ttl_s: float = 60.0
    block_streaming: bool = False
    coalesce_idle_ms: int = 1000


class SessionConfig(BaseModel):
    """Staleness policy for cached sessions."""
    reset_mode: str = "manual"  # manual | daily | idle
    reset_at_hour: int = 0
    idle_minutes: int = 120


class AgentBinding(BaseModel):
    """Route channel traffic to a named agent. Empty fields match anything."""
    agent_id: str
    channel: str | None = None
    account: str | None = None
    peer: str | None = None


class ChannelDefaults(BaseModel):
    """Defaults applied to every channel."""
    group_isolation: str = "per-group"  # per-group | per-thread | shared


class WebhookConfig(BaseModel):
    """Outbound webhook channel."""
    enabled: bool = False
    url: str = ""
    token: str = ""
    allow_from: list[str] = Field(default_factory=list)
    max_text_length: int = 4000
    timeout_seconds: float = 10.0


class ChannelsConfig(BaseModel):
    """Configuration for chat channels."""
    defaults: ChannelDefaults = Field(default_factory=ChannelDefaults)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)


class ProviderConfig(BaseModel):
    """LLM provider credentials."""
    api_key: str = ""
    api_keys: list[str] = Field(default_factory=list)  # extra keys for rotation
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    """Configuration for LLM providers."""
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    groq: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)
    vllm: ProviderConfig = Field(default_factory=ProviderConfig)


class AuthProfile(BaseModel):
    """Named credential profile."""
    provider: str
    api_key: str = ""
    env_var: str = ""


class AuthConfig(BaseModel):
    """Credential profiles."""
    profiles: dict[str, AuthProfile] = Field(default_factory=dict)


class GatewayConfig(BaseModel):
    """HTTP gateway configuration."""
    host: str = "127.0.0.1"
    port: int = 18790


class Config(BaseSettings):
    """Root configuration for relay-agent."""
    agent: AgentConfig = Field(default_factory=AgentConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    bindings: list[AgentBinding] = Field(default_factory=list)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)

    def get_provider(self, name: str) -> ProviderConfig | None:
        """Provider config by name, or None for unknown providers."""
        value = getattr(self.providers, (name or "").strip().lower(), None)
        return value if isinstance(value, ProviderConfig) else None

    model_config = SettingsConfigDict(
        env_prefix="RELAY_AGENT_",
        env_nested_delimiter="__",
    )

"""Settings via pydantic-settings with TETHER_ env prefix.

Provider credentials use validation_alias so the conventional unprefixed
env vars (OPENAI_API_KEY, ANTHROPIC_API_KEY) work out of the box; the
prefixed TETHER_API_KEY takes precedence when both are set.
"""

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CompactionSettings(BaseModel):
    """Immutable compaction configuration (not derived state)."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    reserve_tokens: int = Field(16384, ge=0)
    keep_recent_tokens: int = Field(20000, ge=0)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TETHER_", env_file=".env", extra="ignore", populate_by_name=True
    )

    # Provider
    provider: Literal["openai", "anthropic", "custom"] = "openai"
    api_key: str = Field(
        "",
        validation_alias=AliasChoices("TETHER_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY"),
    )
    # Bearer token for Anthropic-compatible gateways; takes precedence over x-api-key
    auth_token: str = Field("", validation_alias=AliasChoices("TETHER_AUTH_TOKEN", "ANTHROPIC_AUTH_TOKEN"))
    base_url: str = ""  # empty = provider default
    model: str = "gpt-4o"
    temperature: float = 0.7
    max_tokens: int = 2048
    system_prompt: str = (
        "You are a browser automation agent. Use the available tools to gather "
        "evidence and base every answer strictly on real tool output."
    )

    # Transport
    request_timeout: float = 30.0  # seconds, read timeout for a single request
    connect_timeout: float = 10.0
    transport_retries: int = 2
    retry_delay: float = 1.0  # fixed backoff between transport retries

    # Loop
    stream: bool = True
    max_steps: int = 8  # engine-level safety valve per turn
    implicit_tool_calls: bool = True  # text fallback for models without native tool calls
    send_screenshots_as_images: bool = True  # data:image/ tool results become image content

    # Sub-agents
    max_subagents: int = 10  # per session
    subagent_max_steps: int = 6
    subagent_timeout: float = 300.0
    subagent_temperature: float = 0.4
    subagent_max_tokens: int = 1024

    # Compaction
    context_limit: int = 200000
    compaction_enabled: bool = True
    compaction_reserve_tokens: int = 16384
    compaction_keep_recent_tokens: int = 20000
    summary_temperature: float = 0.2
    summary_max_tokens: int = 1600

    # Tool output pruning (per-request, derived copy only)
    tool_pruning_enabled: bool = True
    keep_last_tool_results: int = 6
    tool_soft_trim_chars: int = 6000
    tool_soft_trim_head: int = 2000
    tool_soft_trim_tail: int = 2000
    tool_hard_clear_after: int = 20

    # Tool permission policy
    blocked_tools: list[str] = Field(default_factory=list)
    allowed_domains: list[str] = Field(default_factory=list)  # empty = any domain

    # Runtime
    event_bus_enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    @model_validator(mode="after")
    def _validate_budgets(self) -> "Settings":
        if self.compaction_reserve_tokens >= self.context_limit:
            raise ValueError(
                f"compaction_reserve_tokens ({self.compaction_reserve_tokens}) must be < "
                f"context_limit ({self.context_limit})"
            )
        if self.tool_soft_trim_head + self.tool_soft_trim_tail >= self.tool_soft_trim_chars:
            raise ValueError("tool_soft_trim_head + tool_soft_trim_tail must be < tool_soft_trim_chars")
        return self

    @property
    def compaction(self) -> CompactionSettings:
        return CompactionSettings(
            enabled=self.compaction_enabled,
            reserve_tokens=self.compaction_reserve_tokens,
            keep_recent_tokens=self.compaction_keep_recent_tokens,
        )

    @property
    def wire_style(self) -> str:
        """Wire protocol family for the configured provider."""
        return "anthropic" if self.provider == "anthropic" else "openai"

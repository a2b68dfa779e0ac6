"""
Configuration management for agent-runtime

Uses pydantic-settings for environment variable parsing and validation.
The core never reads the environment itself: it consumes the plain
``AgentConfig`` object produced by ``Settings.get_agent_config()``.
"""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ContextPolicyName = Literal["drop_oldest", "summarize"]


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: Literal["anthropic", "openai", "openrouter"] = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7


@dataclass
class AgentConfig:
    """Knobs consumed by the agent loop, context manager and session manager."""

    # Retry policy for model calls
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter_factor: float = 0.2

    # Loop
    max_iterations: int = 10
    max_parallel_tools: int = 4

    # Context
    context_window_tokens: int = 128_000
    reserved_completion_tokens: int = 4096
    history_token_ceiling: int = 200_000
    context_policy: ContextPolicyName = "drop_oldest"

    # Sessions
    max_sessions: int = 50
    auto_save: bool = True
    session_dir: str = "~/.agent/sessions"

    @property
    def context_budget(self) -> int:
        """Tokens available for the prompt once the completion margin is reserved."""
        return max(0, self.context_window_tokens - self.reserved_completion_tokens)


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "agent-runtime"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = False
    data_dir: str = Field(default="~/.agent", description="Base directory for runtime data")

    # LLM Providers (API Keys)
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")

    # Default model settings
    default_provider: Literal["anthropic", "openai", "openrouter"] = "anthropic"
    default_model: str = ""
    max_tokens: int = 4096
    temperature: float = 0.7

    # Retry
    max_retries: int = Field(default=3, ge=1, description="Maximum attempts per model call, including the first")
    base_delay: float = Field(default=1.0, ge=0, description="Initial backoff delay in seconds")
    max_delay: float = Field(default=10.0, ge=0, description="Backoff ceiling in seconds")
    jitter_factor: float = Field(default=0.2, ge=0, le=1, description="Backoff jitter range [1-j, 1+j]")

    # Agent loop
    max_iterations: int = Field(default=10, ge=1, description="Max LLM calls per turn")
    max_parallel_tools: int = Field(default=4, ge=1, description="Concurrent tool calls per model turn")

    # Context
    context_window_tokens: int = Field(default=128_000, description="Model context size")
    reserved_completion_tokens: int = Field(default=4096, description="Tokens kept free for the completion")
    history_token_ceiling: int = Field(default=200_000, description="Evict history beyond this estimate")
    context_policy: ContextPolicyName = "drop_oldest"

    # Sessions
    session_dir: str = Field(default="~/.agent/sessions", description="Where session files are stored")
    max_sessions: int = Field(default=50, ge=1, description="Sessions retained before purging the oldest")
    auto_save: bool = True
    session_backend: Literal["file", "sql"] = "file"
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/sessions.db",
        description="Database URL for the SQL session backend",
    )

    # Telemetry
    telemetry_exporter: Literal["none", "console", "otlp"] = Field(
        default="none", description="Export agent spans through OpenTelemetry (needs the otel extra)",
    )
    otel_endpoint: str = Field(default="", description="OTLP endpoint; the exporter default when empty")

    # Tools
    workspace_dir: str = Field(default="", description="Root directory for builtin file and shell tools")
    shell_timeout_seconds: int = 30

    @field_validator("session_dir", "data_dir", mode="before")
    @classmethod
    def strip_path(cls, v: str) -> str:
        return v.strip() if v else v

    @property
    def session_path(self) -> Path:
        """Expanded session directory."""
        return Path(self.session_dir).expanduser()

    def get_agent_config(self) -> AgentConfig:
        """Build the config object consumed by the core."""
        return AgentConfig(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter_factor=self.jitter_factor,
            max_iterations=self.max_iterations,
            max_parallel_tools=self.max_parallel_tools,
            context_window_tokens=self.context_window_tokens,
            reserved_completion_tokens=self.reserved_completion_tokens,
            history_token_ceiling=self.history_token_ceiling,
            context_policy=self.context_policy,
            max_sessions=self.max_sessions,
            auto_save=self.auto_save,
            session_dir=self.session_dir,
        )

    def get_llm_config(self, provider: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
        }

        model_map = {
            "anthropic": "claude-sonnet-4-20250514",
            "openai": "gpt-4o",
            "openrouter": "anthropic/claude-sonnet-4",
        }

        base_url_map = {
            "anthropic": None,
            "openai": None,
            "openrouter": "https://openrouter.ai/api/v1",
        }

        model = model_map.get(provider, "")
        if self.default_model and provider == self.default_provider:
            model = self.default_model

        return LLMConfig(
            provider=provider,  # type: ignore
            model=model,
            api_key=api_key_map.get(provider, ""),
            base_url=base_url_map.get(provider),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

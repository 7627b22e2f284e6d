"""
Configuration management for II-Code-Agent

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ZAI_BASE_URL = "https://api.z.ai/api/coding/paas/v4/"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: Literal["openai", "openrouter", "zai"] = "zai"
    model: str = "glm-4.7"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 8192
    temperature: float = 0.7


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "II-Code-Agent"
    debug: bool = False
    log_level: str = "INFO"
    workspace_dir: str = Field(default=".", description="Working directory the tools operate in")

    # LLM Providers (API Keys)
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")
    zai_api_key: str = Field(default="", description="Z.AI coding plan API key")

    # Default model settings
    default_provider: Literal["openai", "openrouter", "zai"] = "zai"
    default_model: str = "glm-4.7"
    subagent_model: str = Field(default="glm-4.5-flash", description="Faster model used by subagents")
    max_tokens: int = 8192
    temperature: float = 0.7
    context_window: int = Field(default=200_000, description="Context window of the default model")

    # Transport
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=1.0, description="Initial backoff in seconds")
    retry_max_delay: float = Field(default=32.0, description="Backoff ceiling in seconds")

    # Tool loop
    max_tool_iterations: int = Field(default=10, ge=1)
    tool_timeout_seconds: float = Field(default=120.0, description="Default per-tool timeout")
    stream_batch_interval_ms: int = Field(default=16, description="UI update coalescing window")

    # Compaction
    compact_warning_threshold: float = 0.70
    compact_trigger_threshold: float = 0.85
    compact_keep_recent: int = Field(default=20, description="Messages kept verbatim on compaction")
    compact_keep_tool_outputs: int = Field(default=3, description="Recent tool-bearing messages left unpruned")
    compact_cache_ttl_seconds: float = 30.0
    summary_temperature: float = 0.3
    summary_max_tokens: int = 1000

    # Checkpoints
    checkpoint_branch_prefix: str = "ii-checkpoint-"
    enable_checkpoints: bool = True

    @field_validator("compact_trigger_threshold")
    @classmethod
    def check_trigger_threshold(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("compact_trigger_threshold must be in (0, 1]")
        return v

    @property
    def batch_interval(self) -> float:
        """Coalescing window in seconds."""
        return self.stream_batch_interval_ms / 1000

    def get_llm_config(self, provider: str | None = None, model: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
            "zai": self.zai_api_key,
        }

        base_url_map = {
            "openai": None,
            "openrouter": OPENROUTER_BASE_URL,
            "zai": ZAI_BASE_URL,
        }

        return LLMConfig(
            provider=provider,  # type: ignore
            model=model or self.default_model,
            api_key=api_key_map.get(provider, ""),
            base_url=base_url_map.get(provider),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

"""
LLM factory for creating provider instances.

Supports: OpenAI, OpenRouter and the Z.AI coding plan, all through the
OpenAI-compatible chat-completions API.
"""

from ..config import LLMConfig, Settings
from .base import BaseLLM
from .openai import OpenAILLM


def create_llm(config: LLMConfig | None = None, settings: Settings | None = None) -> BaseLLM:
    """Create an LLM instance based on configuration.

    Provider routing:
    - openai -> OpenAILLM (native endpoint)
    - openrouter -> OpenAILLM (OpenAI-compatible endpoint)
    - zai -> OpenAILLM with tool-call streaming enabled
    """
    if config is None:
        if settings is None:
            from ..config import get_settings
            settings = get_settings()
        config = settings.get_llm_config()

    provider = config.provider

    if provider in ("openai", "openrouter"):
        return OpenAILLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    elif provider == "zai":
        # Z.AI only streams tool-call arguments when asked to
        return OpenAILLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            extra_body={"tool_stream": True},
        )
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")

"""
OpenAI-compatible LLM provider (OpenAI, OpenRouter, Z.AI coding plan).
"""

from typing import Any, AsyncIterator

import openai
import structlog

from .base import (
    BaseLLM,
    ChatCompletionChunk,
    LLMMessage,
    LLMResponse,
    ToolCall,
    ToolDefinition,
    Usage,
    sanitize_transcript,
)

logger = structlog.get_logger()


def _normalize_finish_reason(reason: str | None) -> str | None:
    # The deprecated function_call reason means the same thing
    if reason == "function_call":
        return "tool_calls"
    return reason


class OpenAILLM(BaseLLM):
    """Chat-completions provider built on the OpenAI SDK."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        extra_body: dict[str, Any] | None = None,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.extra_body = extra_body or {}
        # Retries are owned by RetryingTransport
        self.client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=0,
        )

    @property
    def provider_name(self) -> str:
        return "openai"

    def _convert_messages(
        self,
        messages: list[LLMMessage],
        system_prompt: str | None = None,
    ) -> list[dict[str, Any]]:
        """Convert LLMMessages to the wire format."""
        converted = [msg.to_wire() for msg in sanitize_transcript(messages)]
        if system_prompt:
            converted.insert(0, {"role": "system", "content": system_prompt})
        return converted

    def _build_kwargs(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        system_prompt: str | None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "messages": self._convert_messages(messages, system_prompt),
        }

        if tools:
            kwargs["tools"] = [tool.to_wire() for tool in tools]
            if self.extra_body:
                kwargs["extra_body"] = dict(self.extra_body)

        return kwargs

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a single response."""
        kwargs = self._build_kwargs(messages, tools, system_prompt, temperature, max_tokens)

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            logger.error("OpenAI API error", error=str(e))
            raise

        choice = response.choices[0]
        message = choice.message

        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=tc.function.arguments or "",
            )
            for tc in message.tool_calls or []
        ]

        usage = None
        if response.usage:
            details = getattr(response.usage, "prompt_tokens_details", None)
            usage = Usage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                total_tokens=response.usage.total_tokens,
                cached_tokens=getattr(details, "cached_tokens", None) or 0,
            )

        return LLMResponse(
            content=message.content,
            reasoning_content=getattr(message, "reasoning_content", None),
            tool_calls=tool_calls,
            usage=usage,
            model=response.model,
            finish_reason=_normalize_finish_reason(choice.finish_reason),
            raw_response=response,
        )

    async def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[ChatCompletionChunk]:
        """Open a streamed response."""
        kwargs = self._build_kwargs(messages, tools, system_prompt)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            logger.error("OpenAI streaming error", error=str(e))
            raise

        return self._iter_chunks(response)

    async def _iter_chunks(self, response: Any) -> AsyncIterator[ChatCompletionChunk]:
        try:
            async for raw in response:
                chunk = ChatCompletionChunk.model_validate(raw.model_dump())
                for choice in chunk.choices:
                    choice.finish_reason = _normalize_finish_reason(choice.finish_reason)
                yield chunk
        finally:
            await response.close()

"""
Base classes for LLM providers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Literal

from pydantic import BaseModel, ConfigDict, Field


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolCallStatus(str, Enum):
    """Execution status of a tool call."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ToolCall:
    """A tool call made by the LLM.

    ``arguments`` is the raw serialized text as streamed by the model. It is
    not guaranteed to be valid JSON.
    """

    id: str
    name: str
    arguments: str = ""
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": self.arguments,
            },
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LLMMessage:
    """A message in the conversation."""

    role: Literal["user", "assistant", "system", "tool"]
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_wire(self) -> dict[str, Any]:
        """Render the chat-completions representation of this message."""
        if self.role == "tool":
            return {
                "role": "tool",
                "tool_call_id": self.tool_call_id,
                "content": self.content or "",
            }

        if self.role == "assistant":
            wire: dict[str, Any] = {"role": "assistant", "content": self.content}
            if self.tool_calls:
                wire["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
            # Preserved thinking: reasoning goes back verbatim
            if self.reasoning_content:
                wire["reasoning_content"] = self.reasoning_content
            return wire

        return {"role": self.role, "content": self.content or ""}


@dataclass
class Usage:
    """Token usage reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cached_tokens=self.cached_tokens + other.cached_tokens,
        )


@dataclass
class LLMResponse:
    """Response from a non-streaming completion."""

    content: str | None
    reasoning_content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    model: str = ""
    finish_reason: str | None = None
    raw_response: Any = None


# Streamed chunk shapes (chat-completions compatible)


class FunctionDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    arguments: str | None = None


class ToolCallDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int
    id: str | None = None
    type: str | None = None
    function: FunctionDelta | None = None


class StreamDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str | None = None
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[ToolCallDelta] | None = None


class StreamChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    delta: StreamDelta = Field(default_factory=StreamDelta)
    finish_reason: str | None = None


class PromptTokensDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cached_tokens: int | None = None


class ChunkUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    prompt_tokens_details: PromptTokensDetails | None = None


class ChatCompletionChunk(BaseModel):
    """One incremental unit of a streamed response."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    created: int = 0
    model: str = ""
    choices: list[StreamChoice] = Field(default_factory=list)
    usage: ChunkUsage | None = None


def sanitize_transcript(messages: list[LLMMessage]) -> list[LLMMessage]:
    """Drop tool-role messages whose tool call is not in the preceding assistant turn.

    Compaction keeps a fixed number of recent messages, so the retained tail
    can start with tool results whose assistant message was summarized away.
    """
    sanitized: list[LLMMessage] = []
    open_ids: set[str] = set()

    for msg in messages:
        if msg.role == "tool":
            if msg.tool_call_id in open_ids:
                sanitized.append(msg)
            continue

        open_ids = {tc.id for tc in msg.tool_calls} if msg.role == "assistant" else set()
        sanitized.append(msg)

    return sanitized


class BaseLLM(ABC):
    """Base class for LLM providers."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature

    @abstractmethod
    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a single non-streaming response."""
        pass

    @abstractmethod
    async def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[ChatCompletionChunk]:
        """Open a streamed response.

        Awaiting this performs the network request; the returned iterator then
        yields chunks as they arrive.
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass

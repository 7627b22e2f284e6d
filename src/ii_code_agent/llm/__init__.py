"""
LLM module: provider client, retrying transport and stream aggregation.

Providers (all via the OpenAI-compatible chat-completions API):
- OpenAI
- OpenRouter
- Z.AI coding plan
"""

from .base import (
    BaseLLM,
    ChatCompletionChunk,
    LLMMessage,
    LLMResponse,
    ToolCall,
    ToolCallStatus,
    ToolDefinition,
    Usage,
    sanitize_transcript,
)
from .cancellation import CancellationToken, InterruptGate
from .factory import create_llm
from .openai import OpenAILLM
from .retry import RetryingTransport, classify_error
from .stream import (
    ContentEvent,
    DoneEvent,
    ReasoningEvent,
    StreamEvent,
    StreamProcessor,
    StreamState,
    ToolCallDeltaEvent,
    ToolCallStartEvent,
    get_tool_calls,
    process_chunk,
    state_to_message,
)

__all__ = [
    "BaseLLM",
    "ChatCompletionChunk",
    "LLMMessage",
    "LLMResponse",
    "ToolCall",
    "ToolCallStatus",
    "ToolDefinition",
    "Usage",
    "sanitize_transcript",
    "CancellationToken",
    "InterruptGate",
    "create_llm",
    "OpenAILLM",
    "RetryingTransport",
    "classify_error",
    "ContentEvent",
    "DoneEvent",
    "ReasoningEvent",
    "StreamEvent",
    "StreamProcessor",
    "StreamState",
    "ToolCallDeltaEvent",
    "ToolCallStartEvent",
    "get_tool_calls",
    "process_chunk",
    "state_to_message",
]

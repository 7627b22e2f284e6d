"""
Streaming aggregation.

Turns chat-completions chunks into an accumulated StreamState and a sequence
of discrete events. Tool-call deltas are tracked by their numeric index
because the id/name pair can arrive several fragments after the arguments
started streaming; those early fragments are buffered and replayed in the
``tool_call_start`` event.
"""

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Union

import structlog

from .base import ChatCompletionChunk, LLMMessage, ToolCall, Usage
from .cancellation import CancellationToken

logger = structlog.get_logger()


@dataclass
class PartialToolCall:
    """A tool call still being streamed."""

    id: str = ""
    name: str = ""
    arguments: str = ""
    started: bool = False

    @property
    def complete(self) -> bool:
        return bool(self.id and self.name)


@dataclass
class StreamState:
    """Accumulator for one in-flight model response."""

    content: str = ""
    reasoning_content: str = ""
    role: str | None = None
    tool_calls: dict[int, PartialToolCall] = field(default_factory=dict)
    finish_reason: str | None = None
    usage: Usage | None = None


@dataclass(frozen=True)
class ContentEvent:
    delta: str
    type: str = "content"


@dataclass(frozen=True)
class ReasoningEvent:
    delta: str
    type: str = "reasoning"


@dataclass(frozen=True)
class ToolCallStartEvent:
    index: int
    id: str
    name: str
    arguments: str
    type: str = "tool_call_start"


@dataclass(frozen=True)
class ToolCallDeltaEvent:
    index: int
    arguments: str
    type: str = "tool_call_delta"


@dataclass(frozen=True)
class DoneEvent:
    state: StreamState
    aborted: bool = False
    type: str = "done"


StreamEvent = Union[ContentEvent, ReasoningEvent, ToolCallStartEvent, ToolCallDeltaEvent, DoneEvent]
StreamEventHandler = Callable[[StreamEvent], None]


def process_chunk(chunk: ChatCompletionChunk, state: StreamState) -> list[StreamEvent]:
    """Fold one chunk into ``state`` and return the events it produced."""
    events: list[StreamEvent] = []

    for choice in chunk.choices:
        delta = choice.delta

        if delta.role:
            state.role = delta.role

        if delta.content:
            state.content += delta.content
            events.append(ContentEvent(delta=delta.content))

        if delta.reasoning_content:
            state.reasoning_content += delta.reasoning_content
            events.append(ReasoningEvent(delta=delta.reasoning_content))

        for tc in delta.tool_calls or []:
            partial = state.tool_calls.get(tc.index)
            if partial is None:
                partial = PartialToolCall()
                state.tool_calls[tc.index] = partial

            if tc.id:
                partial.id = tc.id
            if tc.function and tc.function.name:
                partial.name = tc.function.name

            fragment = tc.function.arguments if tc.function and tc.function.arguments else ""
            partial.arguments += fragment

            if not partial.started:
                if partial.complete:
                    partial.started = True
                    events.append(ToolCallStartEvent(
                        index=tc.index,
                        id=partial.id,
                        name=partial.name,
                        arguments=partial.arguments,
                    ))
            elif fragment:
                events.append(ToolCallDeltaEvent(index=tc.index, arguments=fragment))

        if choice.finish_reason:
            state.finish_reason = choice.finish_reason

    if chunk.usage is not None:
        details = chunk.usage.prompt_tokens_details
        state.usage = Usage(
            prompt_tokens=chunk.usage.prompt_tokens,
            completion_tokens=chunk.usage.completion_tokens,
            total_tokens=chunk.usage.total_tokens,
            cached_tokens=(details.cached_tokens or 0) if details else 0,
        )

    return events


def get_tool_calls(state: StreamState) -> list[ToolCall]:
    """Complete tool calls in index order."""
    return [
        ToolCall(id=partial.id, name=partial.name, arguments=partial.arguments)
        for _, partial in sorted(state.tool_calls.items())
        if partial.complete
    ]


def state_to_message(state: StreamState) -> LLMMessage:
    """Finalize a stream state into an assistant message."""
    return LLMMessage(
        role=state.role or "assistant",  # type: ignore[arg-type]
        content=state.content or None,
        reasoning_content=state.reasoning_content or None,
        tool_calls=get_tool_calls(state),
    )


class StreamProcessor:
    """Drives an async chunk iterator through ``process_chunk``.

    Exactly one DoneEvent is emitted per ``process`` call, whether the stream
    ends normally, is aborted, or raises.
    """

    def __init__(
        self,
        cancel_token: CancellationToken | None = None,
        on_event: StreamEventHandler | None = None,
    ):
        self.cancel_token = cancel_token or CancellationToken()
        self.on_event = on_event
        self.state = StreamState()
        self.aborted = False

    def abort(self) -> None:
        self.cancel_token.cancel()

    def _emit(self, event: StreamEvent) -> None:
        if self.on_event is not None:
            self.on_event(event)

    async def _next_chunk(self, iterator: AsyncIterator[ChatCompletionChunk]) -> ChatCompletionChunk | None:
        """Await the next chunk, giving up early if the token fires."""
        next_task = asyncio.ensure_future(iterator.__anext__())
        cancel_task = asyncio.ensure_future(self.cancel_token.wait())
        done, pending = await asyncio.wait(
            {next_task, cancel_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if next_task not in done:
            return None
        try:
            return next_task.result()
        except StopAsyncIteration:
            return None

    async def process(self, chunks: AsyncIterator[ChatCompletionChunk]) -> StreamState:
        iterator = chunks.__aiter__()
        try:
            while True:
                if self.cancel_token.cancelled:
                    self.aborted = True
                    break

                chunk = await self._next_chunk(iterator)
                if chunk is None:
                    self.aborted = self.cancel_token.cancelled
                    break

                for event in process_chunk(chunk, self.state):
                    self._emit(event)
        finally:
            if self.aborted:
                logger.info("Stream aborted", content_chars=len(self.state.content))
                aclose = getattr(iterator, "aclose", None)
                if aclose is not None:
                    await aclose()
            self._emit(DoneEvent(state=self.state, aborted=self.aborted))

        return self.state

"""
Tool-execution loop for one conversation turn.

A turn streams a model response, executes any tool calls it requested,
appends the continuation (assistant message followed by one tool message
per call, in order) and streams again, until the model stops asking for
tools or the iteration cap is hit.
"""

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Hashable

import httpx
import openai
import structlog

from ..errors import AbortedError
from ..llm.base import BaseLLM, LLMMessage, ToolCall, ToolCallStatus, Usage
from ..llm.cancellation import CancellationToken, bind_cancel_token, unbind_cancel_token
from ..llm.retry import RetryingTransport
from ..llm.stream import DoneEvent, StreamEvent, StreamProcessor, StreamState, state_to_message
from ..tools.base import ToolResult
from ..tools.registry import ToolRegistry
from .batching import DEFAULT_INTERVAL, UpdateCoalescer

logger = structlog.get_logger()

DEFAULT_MAX_ITERATIONS = 10
MAX_ITERATIONS_NOTICE = "I've reached the maximum number of tool iterations. Here's what I have so far."
ABORTED_TOOL_ERROR = "Aborted by user"
PROGRESS_KEY = "turn"


class TurnPhase(str, Enum):
    STREAMING = "streaming"
    EXECUTING = "executing"
    CONTINUING = "continuing"
    DONE = "done"


@dataclass
class TurnProgress:
    """Snapshot of a turn in flight, for rendering."""

    phase: TurnPhase
    iteration: int
    text: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class TurnResult:
    """Outcome of one turn."""

    text: str = ""
    messages: list[LLMMessage] = field(default_factory=list)
    iterations: int = 0
    finish_reason: str | None = None
    usage: Usage = field(default_factory=Usage)
    aborted: bool = False
    max_iterations_reached: bool = False
    error: str | None = None


def parse_tool_arguments(raw: str | None) -> dict[str, Any]:
    """Parse streamed argument text, degrading to ``{}`` on anything but a JSON object."""
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed tool arguments", arguments=raw[:200])
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Tool arguments are not an object", arguments=raw[:200])
        return {}
    return parsed


def join_text(prior: str, new: str) -> str:
    """Append continuation text, leaving at most one blank line at the seam."""
    if not new or not new.strip():
        return prior
    if not prior or not prior.strip():
        return new
    return prior.rstrip() + "\n\n" + new.lstrip()


def build_continuation(assistant: LLMMessage, results: list[ToolResult]) -> list[LLMMessage]:
    """The messages that must follow a tool-calling assistant turn.

    The assistant message keeps its content (possibly None) and reasoning
    verbatim; each tool message answers the call with the same index.
    """
    if len(results) != len(assistant.tool_calls):
        raise ValueError(
            f"Expected {len(assistant.tool_calls)} tool results, got {len(results)}"
        )

    calls = [
        replace(
            call,
            status=ToolCallStatus.SUCCESS if result.success else ToolCallStatus.ERROR,
            result=result.to_content(),
        )
        for call, result in zip(assistant.tool_calls, results)
    ]
    finished = replace(assistant, tool_calls=calls)

    tool_messages = [
        LLMMessage(
            role="tool",
            content=call.result,
            tool_call_id=call.id,
            name=call.name,
        )
        for call in calls
    ]
    return [finished, *tool_messages]


class ToolOrchestrator:
    """Runs turns against one model and one tool registry."""

    def __init__(
        self,
        llm: BaseLLM,
        registry: ToolRegistry,
        transport: RetryingTransport | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        tool_timeout: float | None = None,
        on_event: Callable[[StreamEvent], None] | None = None,
        on_progress: Callable[[TurnProgress], None] | None = None,
        batch_interval: float = DEFAULT_INTERVAL,
    ):
        self.llm = llm
        self.registry = registry
        self.transport = transport or RetryingTransport()
        self.max_iterations = max_iterations
        self.tool_timeout = tool_timeout
        self.on_event = on_event
        self.on_progress = on_progress
        self.batch_interval = batch_interval

    def _deliver_progress(self, key: Hashable, progress: TurnProgress) -> None:
        if self.on_progress is not None:
            self.on_progress(progress)

    async def _stream_once(
        self,
        transcript: list[LLMMessage],
        system_prompt: str | None,
        token: CancellationToken,
        prior_text: str,
        iteration: int,
        coalescer: UpdateCoalescer | None,
    ) -> tuple[StreamState, bool]:
        tools = self.registry.get_definitions() or None
        processor = StreamProcessor(cancel_token=token)

        def handle(event: StreamEvent) -> None:
            if coalescer is not None:
                if isinstance(event, DoneEvent):
                    coalescer.flush_all()
                else:
                    state = processor.state
                    coalescer.push(PROGRESS_KEY, TurnProgress(
                        phase=TurnPhase.STREAMING,
                        iteration=iteration,
                        text=join_text(prior_text, state.content),
                        reasoning=state.reasoning_content,
                    ))
            if self.on_event is not None:
                self.on_event(event)

        try:
            chunks = await self.transport.execute(
                lambda: self.llm.stream(transcript, tools=tools, system_prompt=system_prompt),
                token,
            )
        except AbortedError:
            # Cancelled before a stream opened; still exactly one done event
            handle(DoneEvent(state=StreamState(), aborted=True))
            raise

        processor.on_event = handle
        state = await processor.process(chunks)
        return state, processor.aborted

    async def _execute_calls(
        self,
        calls: list[ToolCall],
        token: CancellationToken,
        iteration: int,
        coalescer: UpdateCoalescer | None,
    ) -> list[ToolResult]:
        """Run calls one after another; later calls may depend on earlier ones."""
        results: list[ToolResult] = []

        for call in calls:
            if token.cancelled:
                results.append(ToolResult(success=False, error=ABORTED_TOOL_ERROR))
                continue

            call.status = ToolCallStatus.RUNNING
            arguments = parse_tool_arguments(call.arguments)
            logger.info("Executing tool", tool=call.name, call_id=call.id)

            result = await self.registry.execute(call.name, arguments, timeout=self.tool_timeout)

            call.status = ToolCallStatus.SUCCESS if result.success else ToolCallStatus.ERROR
            call.result = result.to_content()
            results.append(result)

            if coalescer is not None:
                coalescer.push(PROGRESS_KEY, TurnProgress(
                    phase=TurnPhase.EXECUTING,
                    iteration=iteration,
                    tool_calls=list(calls),
                ))

        return results

    async def run_turn(
        self,
        messages: list[LLMMessage],
        system_prompt: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> TurnResult:
        """Drive the model until it answers without tools.

        ``messages`` is the transcript so far, ending with the new input. It is
        not mutated; the entries this turn adds are in ``TurnResult.messages``.

        AuthError, RateLimitError and RetryExhaustedError propagate.
        """
        token = cancel_token or CancellationToken()
        transcript = list(messages)
        result = TurnResult()
        coalescer = (
            UpdateCoalescer(self._deliver_progress, self.batch_interval)
            if self.on_progress is not None
            else None
        )

        phase = TurnPhase.STREAMING
        pending: LLMMessage | None = None
        tool_results: list[ToolResult] = []
        # Tools started by this turn inherit its cancel signal
        binding = bind_cancel_token(token)

        try:
            while phase is not TurnPhase.DONE:
                if phase is TurnPhase.STREAMING:
                    if result.iterations >= self.max_iterations:
                        logger.warning("Max tool iterations reached", iterations=result.iterations)
                        notice = LLMMessage(role="assistant", content=MAX_ITERATIONS_NOTICE)
                        result.messages.append(notice)
                        result.text = join_text(result.text, MAX_ITERATIONS_NOTICE)
                        result.max_iterations_reached = True
                        phase = TurnPhase.DONE
                        continue

                    result.iterations += 1
                    try:
                        state, aborted = await self._stream_once(
                            transcript, system_prompt, token, result.text, result.iterations, coalescer,
                        )
                    except AbortedError:
                        result.aborted = True
                        phase = TurnPhase.DONE
                        continue
                    except (openai.APIError, httpx.TransportError) as e:
                        # Non-retryable provider error or a stream broken mid-way
                        logger.error("Model call failed", error=str(e))
                        result.error = str(e)
                        phase = TurnPhase.DONE
                        continue

                    if state.usage is not None:
                        result.usage = result.usage + state.usage
                    result.finish_reason = state.finish_reason
                    result.text = join_text(result.text, state.content)

                    message = state_to_message(state)

                    if aborted:
                        result.aborted = True
                        # Half-streamed tool calls have no results; keep only the text
                        if message.content:
                            message.tool_calls = []
                            transcript.append(message)
                            result.messages.append(message)
                        phase = TurnPhase.DONE
                    elif state.finish_reason == "tool_calls" and message.tool_calls:
                        pending = message
                        phase = TurnPhase.EXECUTING
                    else:
                        transcript.append(message)
                        result.messages.append(message)
                        phase = TurnPhase.DONE

                elif phase is TurnPhase.EXECUTING:
                    assert pending is not None
                    tool_results = await self._execute_calls(
                        pending.tool_calls, token, result.iterations, coalescer,
                    )
                    phase = TurnPhase.CONTINUING

                elif phase is TurnPhase.CONTINUING:
                    assert pending is not None
                    continuation = build_continuation(pending, tool_results)
                    transcript.extend(continuation)
                    result.messages.extend(continuation)
                    pending = None

                    if token.cancelled:
                        result.aborted = True
                        phase = TurnPhase.DONE
                    else:
                        phase = TurnPhase.STREAMING
        finally:
            unbind_cancel_token(binding)
            if coalescer is not None:
                coalescer.flush_all()

        logger.info(
            "Turn complete",
            iterations=result.iterations,
            finish_reason=result.finish_reason,
            aborted=result.aborted,
            max_iterations_reached=result.max_iterations_reached,
        )
        return result

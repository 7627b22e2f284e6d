"""
Tests for the per-turn tool loop.
"""

import asyncio
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from ii_code_agent.errors import AuthError
from ii_code_agent.llm.base import LLMMessage, ToolCall
from ii_code_agent.llm.cancellation import CancellationToken, current_cancel_token
from ii_code_agent.llm.retry import RetryingTransport
from ii_code_agent.llm.stream import ContentEvent, DoneEvent
from ii_code_agent.agent.orchestrator import (
    MAX_ITERATIONS_NOTICE,
    ToolOrchestrator,
    TurnPhase,
    build_continuation,
    join_text,
    parse_tool_arguments,
)
from ii_code_agent.tools.base import Tool, ToolParameter, ToolResult
from ii_code_agent.tools.registry import ToolRegistry
from ii_code_agent.tools.shell_tool import ShellExecutor, create_shell_tools

from fakes import FakeLLM, chunk, text_stream, tool_stream


def _recording_tool(calls: list, name: str = "record", result: ToolResult | None = None) -> Tool:
    async def handler(**kwargs) -> ToolResult:
        calls.append(kwargs)
        return result or ToolResult(success=True, output=f"recorded {len(calls)}")

    return Tool(
        name=name,
        description="Records its arguments",
        parameters=[ToolParameter(name="note", param_type="string", description="Note", required=False)],
        handler=handler,
    )


def _orchestrator(llm: FakeLLM, registry: ToolRegistry | None = None, **kwargs) -> ToolOrchestrator:
    transport = RetryingTransport(max_attempts=2, sleep=AsyncMock(), rng=lambda: 0.0)
    return ToolOrchestrator(llm=llm, registry=registry or ToolRegistry(), transport=transport, **kwargs)


def _user(text: str) -> list[LLMMessage]:
    return [LLMMessage(role="user", content=text)]


def test_parse_tool_arguments():
    """Test that anything but a JSON object degrades to an empty dict."""
    assert parse_tool_arguments('{"path": "a.py"}') == {"path": "a.py"}
    assert parse_tool_arguments("") == {}
    assert parse_tool_arguments(None) == {}
    assert parse_tool_arguments('{"path": ') == {}
    assert parse_tool_arguments("[1, 2]") == {}


def test_join_text():
    """Test joining text across continuations."""
    assert join_text("", "First") == "First"
    assert join_text("First", "") == "First"
    assert join_text("First\n\n\n", "\n\nSecond") == "First\n\nSecond"
    assert join_text("First", "Second") == "First\n\nSecond"
    assert join_text("First", "   ") == "First"


def test_build_continuation_order():
    """Test the assistant message comes first, then one tool message per call in order."""
    assistant = LLMMessage(
        role="assistant",
        content=None,
        reasoning_content="Need both files.",
        tool_calls=[ToolCall(id="call_a", name="read_file"), ToolCall(id="call_b", name="list_files")],
    )
    results = [ToolResult(success=True, output="contents"), ToolResult(success=False, error="missing")]

    continuation = build_continuation(assistant, results)

    assert [m.role for m in continuation] == ["assistant", "tool", "tool"]
    assert continuation[0].content is None
    assert continuation[0].reasoning_content == "Need both files."
    assert [m.tool_call_id for m in continuation[1:]] == ["call_a", "call_b"]
    assert continuation[1].content == "contents"
    assert continuation[2].content == "Error: missing"
    # The input message is left alone
    assert assistant.tool_calls[0].result is None


def test_build_continuation_length_mismatch():
    assistant = LLMMessage(role="assistant", tool_calls=[ToolCall(id="call_a", name="bash")])

    with pytest.raises(ValueError):
        build_continuation(assistant, [])


@pytest.mark.asyncio
async def test_plain_answer_is_one_message():
    """A stop without tool calls gives exactly one assistant message and no continuation."""
    llm = FakeLLM(streams=[text_stream("Hello!")])

    result = await _orchestrator(llm).run_turn(_user("hi"), system_prompt="Be brief")

    assert len(llm.stream_calls) == 1
    assert llm.stream_calls[0].system_prompt == "Be brief"
    assert len(result.messages) == 1
    assert result.messages[0].role == "assistant"
    assert result.messages[0].content == "Hello!"
    assert result.text == "Hello!"
    assert result.iterations == 1
    assert result.finish_reason == "stop"


@pytest.mark.asyncio
async def test_failing_bash_call_continues(tmp_path):
    """A failing tool becomes an Error: tool message and the model is called again."""
    registry = ToolRegistry()
    registry.register_all(create_shell_tools(ShellExecutor(tmp_path)))
    llm = FakeLLM(streams=[
        tool_stream(("call_1", "bash", '{"command": "exit 1"}'), content="Running it."),
        text_stream("The command failed."),
    ])

    result = await _orchestrator(llm, registry).run_turn(_user("run it"))

    assert len(llm.stream_calls) == 2
    assert [m.role for m in result.messages] == ["assistant", "tool", "assistant"]
    tool_message = result.messages[1]
    assert tool_message.tool_call_id == "call_1"
    assert tool_message.content.startswith("Error:")

    second_request = llm.stream_calls[1].messages
    assert [m.role for m in second_request] == ["user", "assistant", "tool"]
    assert second_request[1].tool_calls[0].id == "call_1"

    assert result.text == "Running it.\n\nThe command failed."


@pytest.mark.asyncio
async def test_tool_calls_execute_in_order():
    calls = []
    registry = ToolRegistry()
    registry.register(_recording_tool(calls))
    llm = FakeLLM(streams=[
        tool_stream(("call_1", "record", '{"note": "first"}'), ("call_2", "record", '{"note": "second"}')),
        text_stream("Done."),
    ])

    result = await _orchestrator(llm, registry).run_turn(_user("go"))

    assert calls == [{"note": "first"}, {"note": "second"}]
    assert [m.content for m in result.messages if m.role == "tool"] == ["recorded 1", "recorded 2"]


@pytest.mark.asyncio
async def test_malformed_arguments_become_empty_dict():
    calls = []
    registry = ToolRegistry()
    registry.register(_recording_tool(calls))
    llm = FakeLLM(streams=[
        tool_stream(("call_1", "record", '{"note": "unterminated')),
        text_stream("ok"),
    ])

    await _orchestrator(llm, registry).run_turn(_user("go"))

    assert calls == [{}]


@pytest.mark.asyncio
async def test_unknown_tool_reported_to_model():
    llm = FakeLLM(streams=[tool_stream(("call_1", "teleport", "{}")), text_stream("Sorry.")])

    result = await _orchestrator(llm).run_turn(_user("go"))

    assert result.messages[1].content == "Error: Tool 'teleport' not found"
    assert len(llm.stream_calls) == 2


@pytest.mark.asyncio
async def test_max_iterations_notice():
    """Test the turn stops at the iteration cap with a notice."""
    calls = []
    registry = ToolRegistry()
    registry.register(_recording_tool(calls))
    llm = FakeLLM(streams=[
        tool_stream(("call_1", "record", "{}")),
        tool_stream(("call_2", "record", "{}")),
        tool_stream(("call_3", "record", "{}")),
    ])

    result = await _orchestrator(llm, registry, max_iterations=2).run_turn(_user("loop"))

    assert len(llm.stream_calls) == 2
    assert len(calls) == 2
    assert result.max_iterations_reached is True
    assert result.messages[-1].role == "assistant"
    assert result.messages[-1].content == MAX_ITERATIONS_NOTICE
    assert result.text.endswith(MAX_ITERATIONS_NOTICE)


@pytest.mark.asyncio
async def test_abort_during_tools_marks_remaining_calls():
    token = CancellationToken()

    async def cancelling() -> ToolResult:
        token.cancel()
        return ToolResult(success=True, output="stopped halfway")

    registry = ToolRegistry()
    registry.register(Tool(name="cancelling", description="Cancels", parameters=[], handler=cancelling))
    registry.register(_recording_tool([]))
    llm = FakeLLM(streams=[
        tool_stream(("call_1", "cancelling", "{}"), ("call_2", "record", "{}")),
        text_stream("never streamed"),
    ])

    result = await _orchestrator(llm, registry).run_turn(_user("go"), cancel_token=token)

    assert result.aborted is True
    assert len(llm.stream_calls) == 1
    tool_messages = [m for m in result.messages if m.role == "tool"]
    assert [m.content for m in tool_messages] == ["stopped halfway", "Error: Aborted by user"]


@pytest.mark.asyncio
async def test_abort_mid_stream_keeps_text_only():
    token = CancellationToken()
    stalled = asyncio.Event()
    llm = FakeLLM(streams=[[
        chunk(role="assistant", content="Partial answer"),
        chunk(tool_calls=[{"index": 0, "id": "call_1", "function": {"name": "bash", "arguments": "{"}}]),
        stalled,
    ]])
    events = []

    def on_event(event):
        events.append(event)
        if event.type == "tool_call_start":
            token.cancel()

    result = await _orchestrator(llm, on_event=on_event).run_turn(_user("go"), cancel_token=token)

    assert result.aborted is True
    assert len(result.messages) == 1
    assert result.messages[0].content == "Partial answer"
    assert result.messages[0].tool_calls == []
    assert sum(isinstance(e, DoneEvent) for e in events) == 1


@pytest.mark.asyncio
async def test_pre_cancelled_turn_emits_one_done_event():
    """Test that a turn cancelled before its stream opens still reports done."""
    token = CancellationToken()
    token.cancel()
    llm = FakeLLM(streams=[text_stream("never streamed")])
    events = []

    result = await _orchestrator(llm, on_event=events.append).run_turn(_user("go"), cancel_token=token)

    assert result.aborted is True
    assert llm.stream_calls == []
    done = [e for e in events if isinstance(e, DoneEvent)]
    assert len(done) == 1
    assert done[0].aborted is True


@pytest.mark.asyncio
async def test_cancel_during_backoff_emits_one_done_event():
    """Test that cancelling while the transport backs off reports done once."""
    token = CancellationToken()

    async def sleep(_delay):
        token.cancel()

    transport = RetryingTransport(max_attempts=3, sleep=sleep, rng=lambda: 0.0)
    llm = FakeLLM(streams=[httpx.ConnectError("refused"), text_stream("never streamed")])
    events = []
    progress = []
    orchestrator = ToolOrchestrator(
        llm=llm,
        registry=ToolRegistry(),
        transport=transport,
        on_event=events.append,
        on_progress=progress.append,
    )

    result = await orchestrator.run_turn(_user("go"), cancel_token=token)

    assert result.aborted is True
    assert len(llm.stream_calls) == 1
    done = [e for e in events if isinstance(e, DoneEvent)]
    assert len(done) == 1
    assert done[0].aborted is True
    assert done[0].state.content == ""


@pytest.mark.asyncio
async def test_tools_see_the_turn_cancel_token():
    token = CancellationToken()
    seen = []

    async def capture_token() -> ToolResult:
        seen.append(current_cancel_token())
        return ToolResult(success=True, output="ok")

    registry = ToolRegistry()
    registry.register(Tool(name="inspect", description="Inspects", parameters=[], handler=capture_token))
    llm = FakeLLM(streams=[tool_stream(("call_1", "inspect", "{}")), text_stream("done")])

    await _orchestrator(llm, registry).run_turn(_user("go"), cancel_token=token)

    assert seen == [token]
    assert current_cancel_token() is None


@pytest.mark.asyncio
async def test_broken_stream_sets_error():
    llm = FakeLLM(streams=[[chunk(content="par"), httpx.ReadError("connection lost")]])

    result = await _orchestrator(llm).run_turn(_user("go"))

    assert result.error == "connection lost"
    assert result.messages == []


@pytest.mark.asyncio
async def test_auth_error_propagates():
    request = httpx.Request("POST", "https://api.example.test/v1/chat/completions")
    error = openai.AuthenticationError(
        "Invalid API key",
        response=httpx.Response(401, request=request),
        body=None,
    )
    llm = FakeLLM(streams=[error])

    with pytest.raises(AuthError):
        await _orchestrator(llm).run_turn(_user("go"))


@pytest.mark.asyncio
async def test_usage_accumulates_across_iterations():
    usage = {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
    registry = ToolRegistry()
    registry.register(_recording_tool([]))
    llm = FakeLLM(streams=[
        [*tool_stream(("call_1", "record", "{}")), chunk(usage=usage)],
        [*text_stream("done"), chunk(usage=usage)],
    ])

    result = await _orchestrator(llm, registry).run_turn(_user("go"))

    assert result.usage.total_tokens == 30
    assert result.iterations == 2


@pytest.mark.asyncio
async def test_progress_and_events_are_delivered():
    progress = []
    events = []
    llm = FakeLLM(streams=[[chunk(content="Hel"), chunk(content="lo"), chunk(finish_reason="stop")]])
    orchestrator = _orchestrator(llm, on_event=events.append, on_progress=progress.append, batch_interval=10)

    await orchestrator.run_turn(_user("hi"))

    assert [e.delta for e in events if isinstance(e, ContentEvent)] == ["Hel", "lo"]
    # Updates within one window collapse to the latest
    assert len(progress) == 1
    assert progress[0].phase is TurnPhase.STREAMING
    assert progress[0].text == "Hello"

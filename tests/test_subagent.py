"""
Tests for subagent delegation.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from ii_code_agent.agent.orchestrator import ToolOrchestrator
from ii_code_agent.llm.base import LLMMessage
from ii_code_agent.llm.cancellation import CancellationToken
from ii_code_agent.llm.retry import RetryingTransport
from ii_code_agent.tools.base import Tool, ToolParameter, ToolResult
from ii_code_agent.tools.registry import ToolRegistry
from ii_code_agent.tools.task_tool import SubagentRunner, SubagentTask, create_task_tools

from fakes import FakeLLM, chunk, text_stream, tool_stream


def _stub(name: str, calls: list) -> Tool:
    async def handler(**kwargs) -> ToolResult:
        calls.append((name, kwargs))
        return ToolResult(success=True, output=f"{name} ok")

    return Tool(
        name=name,
        description=name,
        parameters=[
            ToolParameter(name="path", param_type="string", description="Path", required=False),
            ToolParameter(name="command", param_type="string", description="Command", required=False),
        ],
        handler=handler,
    )


def _registry(calls: list) -> ToolRegistry:
    registry = ToolRegistry()
    for name in ("read_file", "write_file", "edit_file", "list_files", "glob", "grep", "bash"):
        registry.register(_stub(name, calls))
    return registry


@pytest.mark.asyncio
async def test_explore_subagent_reports_actions():
    calls = []
    llm = FakeLLM(streams=[
        tool_stream(("call_1", "read_file", json.dumps({"path": "src/parser.py"}))),
        text_stream("The parser lives in src/parser.py."),
    ])
    runner = SubagentRunner(llm, _registry(calls))

    result = await runner.run(SubagentTask(prompt="Find the parser", subagent_type="explore"))

    assert result.success is True
    assert result.output == (
        "Actions taken:\n  - read_file src/parser.py\n\nResult:\nThe parser lives in src/parser.py."
    )
    assert calls == [("read_file", {"path": "src/parser.py"})]
    assert "exploration agent" in llm.stream_calls[0].system_prompt


@pytest.mark.asyncio
async def test_explore_subagent_only_sees_read_only_tools():
    llm = FakeLLM(streams=[text_stream("Nothing to do.")])
    runner = SubagentRunner(llm, _registry([]))

    await runner.run(SubagentTask(prompt="Look around", subagent_type="explore"))

    offered = sorted(tool.name for tool in llm.stream_calls[0].tools)
    assert offered == ["glob", "grep", "read_file"]


@pytest.mark.asyncio
async def test_subagent_cannot_call_tools_outside_its_type():
    calls = []
    llm = FakeLLM(streams=[
        tool_stream(("call_1", "bash", json.dumps({"command": "rm -rf build"}))),
        text_stream("Could not run it."),
    ])
    runner = SubagentRunner(llm, _registry(calls))

    result = await runner.run(SubagentTask(prompt="Clean up", subagent_type="explore"))

    assert calls == []
    assert result.success is True
    assert "Error: Tool 'bash' not found" in llm.stream_calls[1].messages[-1].content


@pytest.mark.asyncio
async def test_unknown_subagent_type():
    runner = SubagentRunner(FakeLLM(), _registry([]))

    result = await runner.run(SubagentTask(prompt="x", subagent_type="wizard"))

    assert result.success is False
    assert result.error == "Unknown subagent type: wizard"


@pytest.mark.asyncio
async def test_subagent_iteration_cap_is_a_failure():
    llm = FakeLLM(streams=[tool_stream((f"call_{i}", "glob", "{}")) for i in range(3)])
    runner = SubagentRunner(llm, _registry([]), max_iterations=2)

    result = await runner.run(SubagentTask(prompt="Loop", subagent_type="general"))

    assert result.success is False
    assert result.error == "Subagent reached maximum iterations without completing"
    assert result.metadata["iterations"] == 2


@pytest.mark.asyncio
async def test_dispatch_subagents_tool():
    llm = FakeLLM(streams=[text_stream("first answer"), text_stream("second answer")])
    tools = {tool.name: tool for tool in create_task_tools(SubagentRunner(llm, _registry([])))}

    result = await tools["dispatch_subagents"].execute(tasks=[
        {"prompt": "Find A", "subagent_type": "explore", "description": "Find A"},
        {"prompt": "Find B", "subagent_type": "explore", "description": "Find B"},
    ])

    assert result.success is True
    assert result.metadata == {"count": 2, "failed": 0}
    assert "## Task 1: Find A" in result.output
    assert "## Task 2: Find B" in result.output
    assert "first answer" in result.output
    assert "second answer" in result.output


@pytest.mark.asyncio
async def test_dispatch_requires_prompts():
    tools = {tool.name: tool for tool in create_task_tools(SubagentRunner(FakeLLM(), _registry([])))}

    result = await tools["dispatch_subagents"].execute(tasks=[{"subagent_type": "explore"}])

    assert result.success is False
    assert result.error == "Invalid parameters: tasks.0: prompt is required"


@pytest.mark.asyncio
async def test_general_subagent_tools():
    llm = FakeLLM(streams=[text_stream("Done.")])
    runner = SubagentRunner(llm, _registry([]))

    await runner.run(SubagentTask(prompt="Fix it", subagent_type="general"))

    offered = sorted(tool.name for tool in llm.stream_calls[0].tools)
    assert offered == ["bash", "edit_file", "glob", "grep", "read_file", "write_file"]


@pytest.mark.asyncio
async def test_cancelling_parent_turn_stops_subagent():
    """Test that the parent turn's cancel signal reaches a running subagent."""
    token = CancellationToken()
    stalled = asyncio.Event()
    transport = RetryingTransport(max_attempts=1, sleep=AsyncMock())
    subagent_llm = FakeLLM(streams=[[chunk(role="assistant", content="Searching"), stalled]])
    runner = SubagentRunner(subagent_llm, _registry([]), transport=transport)

    registry = ToolRegistry()
    registry.register_all(create_task_tools(runner))
    parent_llm = FakeLLM(streams=[
        tool_stream(("call_1", "task", json.dumps({"prompt": "Find the parser", "subagent_type": "explore"}))),
        text_stream("never streamed"),
    ])
    orchestrator = ToolOrchestrator(llm=parent_llm, registry=registry, transport=transport)

    async def cancel_once_subagent_streams():
        while not subagent_llm.opened:
            await asyncio.sleep(0.01)
        token.cancel()

    canceller = asyncio.create_task(cancel_once_subagent_streams())
    result = await asyncio.wait_for(
        orchestrator.run_turn([LLMMessage(role="user", content="go")], cancel_token=token),
        timeout=5,
    )
    await canceller

    assert result.aborted is True
    assert len(parent_llm.stream_calls) == 1
    assert subagent_llm.opened[0].closed is True
    tool_message = result.messages[-1]
    assert tool_message.role == "tool"
    assert tool_message.content.startswith("Error: Subagent aborted")


@pytest.mark.asyncio
async def test_subagent_without_parent_turn_is_not_cancelled():
    llm = FakeLLM(streams=[text_stream("Found it.")])
    runner = SubagentRunner(llm, _registry([]))

    result = await runner.run(SubagentTask(prompt="Find it", subagent_type="explore"))

    assert result.success is True
    assert result.output == "Found it."

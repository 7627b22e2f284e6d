"""
Task Tools - delegate work to subagents.

A subagent runs its own tool loop against a filtered copy of the registry,
with its own system prompt and iteration counter. ``dispatch_subagents``
runs several of them concurrently.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..llm.base import LLMMessage
from ..llm.cancellation import current_cancel_token
from .base import Tool, ToolParameter, ToolResult

if TYPE_CHECKING:
    from ..llm.base import BaseLLM
    from ..llm.retry import RetryingTransport
    from .registry import ToolRegistry

logger = logging.getLogger(__name__)

SUBAGENT_TOOLS: dict[str, list[str]] = {
    "explore": ["read_file", "glob", "grep"],
    "general": ["read_file", "write_file", "edit_file", "glob", "grep", "bash"],
}

MAX_CONCURRENT_SUBAGENTS = 4
SUBAGENT_TIMEOUT = 600.0
ARG_SUMMARY_KEYS = ("path", "file_path", "command", "pattern", "query")


@dataclass
class SubagentTask:
    prompt: str
    subagent_type: str = "explore"
    description: str = ""


def _summarize_call(name: str, arguments: dict[str, Any]) -> str:
    for key in ARG_SUMMARY_KEYS:
        value = arguments.get(key)
        if value:
            text = str(value)
            if len(text) > 30:
                text = text[:27] + "..."
            return f"{name} {text}"
    return name


class SubagentRunner:
    """Runs subagents with their own orchestrator."""

    def __init__(
        self,
        llm: "BaseLLM",
        registry: "ToolRegistry",
        transport: "RetryingTransport | None" = None,
        max_iterations: int = 10,
        max_concurrency: int = MAX_CONCURRENT_SUBAGENTS,
    ):
        self.llm = llm
        self.registry = registry
        self.transport = transport
        self.max_iterations = max_iterations
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def run(self, task: SubagentTask) -> ToolResult:
        """Run one subagent to completion."""
        from ..agent.orchestrator import ToolOrchestrator, parse_tool_arguments
        from ..agent.prompts import get_subagent_prompt

        allowed = SUBAGENT_TOOLS.get(task.subagent_type)
        if allowed is None:
            return ToolResult(success=False, error=f"Unknown subagent type: {task.subagent_type}")

        orchestrator = ToolOrchestrator(
            llm=self.llm,
            registry=self.registry.subset(allowed),
            transport=self.transport,
            max_iterations=self.max_iterations,
        )

        logger.info(f"Starting {task.subagent_type} subagent: {task.description or task.prompt[:60]}")

        async with self._semaphore:
            try:
                result = await orchestrator.run_turn(
                    [LLMMessage(role="user", content=task.prompt)],
                    system_prompt=get_subagent_prompt(task.subagent_type),
                    cancel_token=current_cancel_token(),
                )
            except Exception as e:
                logger.error(f"Subagent failed: {e}")
                return ToolResult(success=False, error=f"Subagent error: {e}")

        actions = [
            _summarize_call(call.name, parse_tool_arguments(call.arguments))
            for message in result.messages
            for call in message.tool_calls
        ]

        output = result.text
        if actions:
            action_lines = "\n".join(f"  - {a}" for a in actions)
            output = f"Actions taken:\n{action_lines}\n\nResult:\n{output}"

        metadata = {
            "subagent_type": task.subagent_type,
            "description": task.description,
            "actions": actions,
            "iterations": result.iterations,
        }

        if result.max_iterations_reached:
            return ToolResult(
                success=False,
                output=output,
                error="Subagent reached maximum iterations without completing",
                metadata=metadata,
            )
        if result.aborted:
            return ToolResult(success=False, output=output, error="Subagent aborted", metadata=metadata)
        if result.error:
            return ToolResult(success=False, output=output, error=f"Subagent error: {result.error}", metadata=metadata)

        return ToolResult(success=True, output=output, metadata=metadata)

    async def dispatch(self, tasks: list[SubagentTask]) -> list[ToolResult]:
        """Run several subagents concurrently, results in task order."""
        results = await asyncio.gather(*(self.run(task) for task in tasks), return_exceptions=True)
        return [
            r if isinstance(r, ToolResult) else ToolResult(success=False, error=f"Subagent error: {r}")
            for r in results
        ]


def create_task_tools(runner: SubagentRunner) -> list[Tool]:
    """Create the subagent tools bound to ``runner``."""

    async def task_handler(prompt: str, subagent_type: str, description: str = "") -> ToolResult:
        return await runner.run(SubagentTask(prompt=prompt, subagent_type=subagent_type, description=description))

    async def dispatch_handler(tasks: list) -> ToolResult:
        parsed = []
        for i, item in enumerate(tasks):
            if not isinstance(item, dict) or not item.get("prompt"):
                return ToolResult(success=False, error=f"Invalid parameters: tasks.{i}: prompt is required")
            parsed.append(SubagentTask(
                prompt=item["prompt"],
                subagent_type=item.get("subagent_type", "explore"),
                description=item.get("description", ""),
            ))

        results = await runner.dispatch(parsed)

        sections = []
        for i, (task, result) in enumerate(zip(parsed, results), 1):
            title = task.description or task.prompt[:60]
            sections.append(f"## Task {i}: {title}\n{result.to_content()}")

        return ToolResult(
            success=all(r.success for r in results),
            output="\n\n".join(sections),
            error=None if all(r.success for r in results) else "\n\n".join(sections),
            metadata={"count": len(results), "failed": sum(1 for r in results if not r.success)},
        )

    task = Tool(
        name="task",
        description=(
            "Delegate a self-contained task to a subagent. 'explore' subagents have read-only "
            "file access for searching and analysis; 'general' subagents can also write files "
            "and run shell commands."
        ),
        parameters=[
            ToolParameter(
                name="prompt",
                param_type="string",
                description="Complete instructions for the subagent",
                required=True,
            ),
            ToolParameter(
                name="subagent_type",
                param_type="string",
                description="Kind of subagent to run",
                required=True,
                enum=list(SUBAGENT_TOOLS),
            ),
            ToolParameter(
                name="description",
                param_type="string",
                description="Short description of the task",
                required=False,
            ),
        ],
        handler=task_handler,
        timeout=SUBAGENT_TIMEOUT,
    )

    dispatch = Tool(
        name="dispatch_subagents",
        description="Run several independent subagent tasks at the same time and collect their results.",
        parameters=[
            ToolParameter(
                name="tasks",
                param_type="array",
                description="Tasks to run, each with prompt, subagent_type and description",
                required=True,
                items={
                    "type": "object",
                    "properties": {
                        "prompt": {"type": "string"},
                        "subagent_type": {"type": "string", "enum": list(SUBAGENT_TOOLS)},
                        "description": {"type": "string"},
                    },
                    "required": ["prompt", "subagent_type"],
                },
            ),
        ],
        handler=dispatch_handler,
        timeout=SUBAGENT_TIMEOUT,
    )

    return [task, dispatch]

"""
Todo Tools - the session's task list, read and replaced through the session store.
"""

import logging
from collections import Counter
from typing import TYPE_CHECKING, Any, Callable

from .base import Tool, ToolParameter, ToolResult

if TYPE_CHECKING:
    from ..agent.session import SessionStore, Todo

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    "pending": "[ ]",
    "in_progress": "[>]",
    "completed": "[x]",
    "cancelled": "[-]",
}

TODO_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "content": {"type": "string"},
        "status": {"type": "string", "enum": list(STATUS_ICONS)},
        "priority": {"type": "string", "enum": ["high", "medium", "low"]},
    },
    "required": ["id", "content", "status", "priority"],
}


def _parse_todos(items: list[Any]) -> list["Todo"]:
    from ..agent.session import Todo

    todos = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"todos.{i}: expected an object")
        try:
            todo = Todo(
                id=str(item["id"]),
                content=str(item["content"]),
                status=item.get("status", "pending"),
                priority=item.get("priority", "medium"),
            )
        except KeyError as e:
            raise ValueError(f"todos.{i}: missing field {e.args[0]}") from e
        if todo.status not in STATUS_ICONS:
            raise ValueError(f"todos.{i}.status: invalid status '{todo.status}'")
        if todo.priority not in ("high", "medium", "low"):
            raise ValueError(f"todos.{i}.priority: invalid priority '{todo.priority}'")
        todos.append(todo)
    return todos


def create_todo_tools(store: "SessionStore", session_id: Callable[[], str]) -> list[Tool]:
    """Create todo tools. ``session_id`` returns the session the call belongs to."""

    async def todo_read_handler() -> ToolResult:
        try:
            session = await store.read(session_id())
        except KeyError as e:
            return ToolResult(success=False, error=str(e))

        todos = session.todos
        if not todos:
            return ToolResult(success=True, output="No todos found for this session.", metadata={"total": 0})

        counts = Counter(t.status for t in todos)
        header = " | ".join(f"{status}: {count}" for status, count in counts.items())
        lines = [f"{STATUS_ICONS[t.status]} {t.content}" for t in todos]

        return ToolResult(
            success=True,
            output=f"{header}\n" + "\n".join(lines),
            metadata={"total": len(todos), "by_status": dict(counts)},
        )

    async def todo_write_handler(todos: list) -> ToolResult:
        try:
            parsed = _parse_todos(todos)
        except ValueError as e:
            return ToolResult(success=False, error=f"Invalid parameters: {e}")

        try:
            await store.update(session_id(), todos=parsed)
        except KeyError as e:
            return ToolResult(success=False, error=str(e))

        remaining = sum(1 for t in parsed if t.is_open)
        logger.debug(f"Todo list updated: {len(parsed)} items, {remaining} open")
        return ToolResult(
            success=True,
            output=f"Todo list updated. {remaining} tasks remaining.",
            metadata={"total": len(parsed), "remaining": remaining},
        )

    todo_read = Tool(
        name="todo_read",
        description="Read the current session's todo list.",
        parameters=[],
        handler=todo_read_handler,
        read_only=True,
    )

    todo_write = Tool(
        name="todo_write",
        description=(
            "Replace the session's todo list. Send the full list every time, each item with "
            "id, content, status (pending, in_progress, completed, cancelled) and priority "
            "(high, medium, low)."
        ),
        parameters=[
            ToolParameter(
                name="todos",
                param_type="array",
                description="The complete todo list",
                required=True,
                items=TODO_ITEM_SCHEMA,
            ),
        ],
        handler=todo_write_handler,
    )

    return [todo_read, todo_write]

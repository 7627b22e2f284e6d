"""
Tools module for agent capabilities.
"""

from .base import Tool, ToolParameter, ToolResult
from .file_tool import FileManager, create_file_tools
from .registry import ToolRegistry, strip_null_values
from .shell_tool import ShellConfig, ShellExecutor, create_shell_tools
from .task_tool import SubagentRunner, SubagentTask, create_task_tools
from .todo_tool import create_todo_tools

__all__ = [
    "Tool",
    "ToolParameter",
    "ToolResult",
    "FileManager",
    "create_file_tools",
    "ToolRegistry",
    "strip_null_values",
    "ShellConfig",
    "ShellExecutor",
    "create_shell_tools",
    "SubagentRunner",
    "SubagentTask",
    "create_task_tools",
    "create_todo_tools",
]

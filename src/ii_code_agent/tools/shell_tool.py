"""
Bash Tool - run shell commands in the session's working directory.

Commands run through the system shell with a timeout and output limits.
A short list of patterns that are never legitimate for a coding session is
refused outright.
"""

import asyncio
import logging
import os
import re
import signal
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .base import Tool, ToolParameter, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class ShellConfig:
    """Configuration for shell command execution."""

    timeout_seconds: float = 120.0
    max_output_lines: int = 2000
    max_output_chars: int = 30000

    blocked_patterns: list[str] = field(default_factory=lambda: [
        r"rm\s+-rf\s+/(\s|$)",
        r"rm\s+-rf\s+~",
        r">\s*/dev/sd",
        r"\bmkfs\b",
        r"\bdd\s+if=",
        r":\(\)\s*\{\s*:\|:&\s*\};:",
    ])


@dataclass
class CommandOutput:
    returncode: int
    stdout: str
    stderr: str
    truncated: bool = False
    timed_out: bool = False
    duration: float = 0.0


class ShellExecutor:
    """Executes shell commands inside a working directory."""

    def __init__(self, working_dir: str | Path = ".", config: Optional[ShellConfig] = None):
        self.config = config or ShellConfig()
        self.working_dir = Path(working_dir).expanduser().resolve()

    def _blocked_reason(self, command: str) -> str | None:
        if not command.strip():
            return "Empty command"
        for pattern in self.config.blocked_patterns:
            if re.search(pattern, command, re.IGNORECASE):
                return "Command contains blocked pattern"
        return None

    def _resolve_workdir(self, workdir: Optional[str]) -> Path:
        if not workdir:
            return self.working_dir
        path = Path(workdir).expanduser()
        if not path.is_absolute():
            path = self.working_dir / path
        return path.resolve()

    async def execute(
        self,
        command: str,
        workdir: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandOutput:
        """Execute a shell command."""
        reason = self._blocked_reason(command)
        if reason:
            return CommandOutput(returncode=-1, stdout="", stderr=f"Command blocked: {reason}")

        cwd = self._resolve_workdir(workdir)
        if not cwd.is_dir():
            return CommandOutput(returncode=-1, stdout="", stderr=f"Working directory not found: {workdir}")

        limit = timeout or self.config.timeout_seconds
        started = time.monotonic()

        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=os.environ.copy(),
            start_new_session=sys.platform != "win32",
        )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=limit)
        except asyncio.TimeoutError:
            await self._kill(process)
            logger.warning(f"Command timed out after {limit:g}s: {command[:80]}")
            return CommandOutput(
                returncode=-1,
                stdout="",
                stderr=f"Command timed out after {limit:g} seconds",
                timed_out=True,
                duration=time.monotonic() - started,
            )
        except asyncio.CancelledError:
            # Cancelled from outside (registry timeout or turn abort)
            await asyncio.shield(self._kill(process))
            logger.warning(f"Command cancelled: {command[:80]}")
            raise

        stdout_str, out_truncated = self._truncate_output(stdout.decode("utf-8", errors="replace"))
        stderr_str, err_truncated = self._truncate_output(stderr.decode("utf-8", errors="replace"))

        return CommandOutput(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout_str,
            stderr=stderr_str,
            truncated=out_truncated or err_truncated,
            duration=time.monotonic() - started,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        """Kill the shell and everything it started, then reap it."""
        if process.returncode is None:
            try:
                if sys.platform != "win32":
                    os.killpg(process.pid, signal.SIGKILL)
                else:
                    process.kill()
            except (ProcessLookupError, PermissionError):
                pass  # already exited
        await process.wait()

    def _truncate_output(self, output: str) -> tuple[str, bool]:
        """Truncate output to configured limits."""
        truncated = False
        lines = output.split("\n")

        if len(lines) > self.config.max_output_lines:
            output = "\n".join(lines[:self.config.max_output_lines])
            output += f"\n[Output truncated to {self.config.max_output_lines} lines]"
            truncated = True

        if len(output) > self.config.max_output_chars:
            output = output[:self.config.max_output_chars] + "\n[Output truncated]"
            truncated = True

        return output, truncated


def format_command_output(result: CommandOutput) -> str:
    parts = []
    if result.stdout:
        parts.append(result.stdout.rstrip("\n"))
    if result.stderr:
        parts.append(result.stderr.rstrip("\n"))
    if result.returncode != 0 and not result.timed_out:
        parts.append(f"Exit code: {result.returncode}")
    return "\n".join(parts)


def create_shell_tools(executor: ShellExecutor) -> list[Tool]:
    """Create the bash tool bound to ``executor``."""

    async def bash_handler(
        command: str,
        description: str = "",
        workdir: str = "",
        timeout: float | None = None,
    ) -> ToolResult:
        result = await executor.execute(command, workdir or None, timeout)
        output = format_command_output(result)
        metadata = {
            "command": command,
            "description": description,
            "exit_code": result.returncode,
            "truncated": result.truncated,
            "duration": round(result.duration, 3),
        }

        if result.returncode != 0:
            return ToolResult(success=False, output=output, error=output or "Command failed", metadata=metadata)

        return ToolResult(
            success=True,
            output=output or "Command completed successfully.",
            metadata=metadata,
        )

    bash = Tool(
        name="bash",
        description=(
            "Execute a shell command in the working directory. Use for builds, tests, git and "
            "other command-line tasks. Output is truncated when very long."
        ),
        parameters=[
            ToolParameter(
                name="command",
                param_type="string",
                description="The shell command to execute",
                required=True,
            ),
            ToolParameter(
                name="description",
                param_type="string",
                description="A few words describing what the command does",
                required=False,
            ),
            ToolParameter(
                name="workdir",
                param_type="string",
                description="Directory to run in (default: working directory)",
                required=False,
            ),
            ToolParameter(
                name="timeout",
                param_type="number",
                description="Timeout in seconds",
                required=False,
            ),
        ],
        handler=bash_handler,
    )

    return [bash]

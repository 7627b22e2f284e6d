"""
Search Tool - regex search over file contents.

Uses ripgrep when it is installed and a line-by-line ``re`` scan of the
working tree otherwise. Matches are reported as ``path:line: text`` with
paths relative to the working directory.
"""

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .base import Tool, ToolParameter, ToolResult
from .file_tool import SKIPPED_DIRS, FileManager

logger = logging.getLogger(__name__)

MAX_MATCHES = 100
MAX_MATCHES_PER_FILE = 10
MAX_LINE_LENGTH = 120
SEARCH_TIMEOUT = 30.0

_RG_LINE = re.compile(r"^(.*?):(\d+):(.*)$")


@dataclass
class GrepMatch:
    path: str
    line: int
    text: str

    def format(self) -> str:
        text = self.text.strip()
        if len(text) > MAX_LINE_LENGTH:
            text = text[:MAX_LINE_LENGTH - 3] + "..."
        return f"{self.path}:{self.line}: {text}"


class ContentSearcher:
    """Searches file contents inside a FileManager's working directory."""

    def __init__(self, files: FileManager, use_ripgrep: Optional[bool] = None):
        self.files = files
        self.use_ripgrep = shutil.which("rg") is not None if use_ripgrep is None else use_ripgrep

    @property
    def working_dir(self) -> Path:
        return self.files.working_dir

    async def search(self, pattern: str, path: str = ".", include: Optional[str] = None) -> list[GrepMatch]:
        """Matching lines, at most MAX_MATCHES_PER_FILE per file and MAX_MATCHES + 1 overall."""
        target = self.files.checked_path(path)
        if not target.exists():
            raise FileNotFoundError(f"Path not found: {path}")

        if self.use_ripgrep:
            return await self._search_ripgrep(pattern, target, include)
        return self._search_python(pattern, target, include)

    def _relative(self, path: Path) -> str:
        return str(path.resolve().relative_to(self.working_dir))

    async def _search_ripgrep(self, pattern: str, target: Path, include: Optional[str]) -> list[GrepMatch]:
        cmd = [
            "rg",
            "--line-number",
            "--no-heading",
            "--with-filename",
            "--color", "never",
            "--sort", "path",
            "--max-count", str(MAX_MATCHES_PER_FILE),
        ]
        if include:
            cmd.extend(["--glob", include])
        cmd.extend(["--", pattern, self._relative(target)])

        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(self.working_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=SEARCH_TIMEOUT)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            process.kill()
            await process.wait()
            raise

        # rg exits 1 for no matches and 2 for errors, possibly alongside matches
        if process.returncode == 2 and not stdout:
            raise ValueError(f"Search failed: {stderr.decode('utf-8', errors='replace').strip()}")

        matches = []
        for line in stdout.decode("utf-8", errors="replace").splitlines():
            parsed = _RG_LINE.match(line)
            if parsed is None:
                continue
            matches.append(GrepMatch(
                path=parsed.group(1).removeprefix("./"),
                line=int(parsed.group(2)),
                text=parsed.group(3),
            ))
            if len(matches) > MAX_MATCHES:
                break

        return matches

    def _candidate_files(self, target: Path, include: Optional[str]) -> list[Path]:
        if target.is_file():
            return [target]

        files = []
        for file_path in sorted(target.rglob("*")):
            relative = file_path.relative_to(target)
            if any(part in SKIPPED_DIRS for part in relative.parts[:-1]):
                continue
            if include and not file_path.match(include):
                continue
            if file_path.is_file():
                files.append(file_path)
        return files

    def _search_python(self, pattern: str, target: Path, include: Optional[str]) -> list[GrepMatch]:
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise ValueError(f"Invalid regex pattern: {e}") from e

        matches: list[GrepMatch] = []
        for file_path in self._candidate_files(target, include):
            try:
                data = file_path.read_bytes()
            except OSError as e:
                logger.debug(f"Skipping unreadable file {file_path}: {e}")
                continue
            if b"\x00" in data[:1024]:
                continue

            found = 0
            for number, line in enumerate(data.decode("utf-8", errors="replace").splitlines(), 1):
                if regex.search(line):
                    matches.append(GrepMatch(path=self._relative(file_path), line=number, text=line))
                    found += 1
                    if len(matches) > MAX_MATCHES:
                        return matches
                    if found >= MAX_MATCHES_PER_FILE:
                        break

        return matches


def create_search_tools(searcher: ContentSearcher) -> list[Tool]:
    """Create the grep tool bound to ``searcher``."""

    async def grep_handler(pattern: str, path: str = ".", include: str = "") -> ToolResult:
        try:
            matches = await searcher.search(pattern, path, include or None)
        except (OSError, ValueError) as e:
            return ToolResult(success=False, error=str(e))

        if not matches:
            return ToolResult(
                success=True,
                output=f"No matches found for pattern '{pattern}'",
                metadata={"count": 0, "truncated": False},
            )

        truncated = len(matches) > MAX_MATCHES
        output = "\n".join(match.format() for match in matches[:MAX_MATCHES])
        if truncated:
            output += f"\n\n(Results limited to {MAX_MATCHES} matches. Narrow the pattern or path.)"

        return ToolResult(
            success=True,
            output=output,
            metadata={"count": min(len(matches), MAX_MATCHES), "truncated": truncated},
        )

    grep = Tool(
        name="grep",
        description=(
            "Search file contents with a regular expression. Returns matching lines as "
            "path:line: text, at most 10 per file."
        ),
        parameters=[
            ToolParameter(
                name="pattern",
                param_type="string",
                description="Regular expression to search for",
                required=True,
            ),
            ToolParameter(
                name="path",
                param_type="string",
                description="File or directory to search (default: working directory)",
                required=False,
            ),
            ToolParameter(
                name="include",
                param_type="string",
                description="Glob restricting which files are searched, e.g. '*.py'",
                required=False,
            ),
        ],
        handler=grep_handler,
        read_only=True,
    )

    return [grep]

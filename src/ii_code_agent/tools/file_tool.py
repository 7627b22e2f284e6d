"""
File Tools - read, write, edit and find files inside the working directory.

Paths are resolved against the working directory and refused when they
escape it.
"""

import difflib
import logging
from pathlib import Path
from typing import Optional

from .base import Tool, ToolParameter, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINES = 2000
MAX_LISTED_FILES = 200
MAX_GLOB_RESULTS = 1000
SKIPPED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache"}


class FileManager:
    """File operations bounded to one working directory."""

    def __init__(self, working_dir: str | Path = "."):
        self.working_dir = Path(working_dir).expanduser().resolve()

        self.blocked_paths = {
            ".ssh", ".gnupg", ".aws", ".netrc",
        }

    def _is_safe_path(self, path: Path) -> bool:
        """Check if a path is safe to access."""
        resolved = path.resolve()

        if resolved != self.working_dir and self.working_dir not in resolved.parents:
            logger.warning(f"Path outside working directory: {path}")
            return False

        for part in resolved.relative_to(self.working_dir).parts:
            if part in self.blocked_paths:
                logger.warning(f"Blocked path pattern: {path}")
                return False

        return True

    def _normalize_path(self, path: str) -> Path:
        """Normalize a path relative to the working directory."""
        p = Path(path).expanduser()

        if not p.is_absolute():
            p = self.working_dir / p

        return p

    def checked_path(self, path: str) -> Path:
        """Resolve ``path`` against the working directory, refusing unsafe paths."""
        file_path = self._normalize_path(path)
        if not self._is_safe_path(file_path):
            raise PermissionError(f"Access denied: {path}")
        return file_path

    def read_file(self, path: str, offset: int = 0, limit: Optional[int] = None) -> tuple[str, int]:
        """Read a file as numbered lines. Returns the text and the file's total line count."""
        file_path = self.checked_path(path)

        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {path}")

        if not file_path.is_file():
            raise IsADirectoryError(f"Path is a directory: {path}")

        lines = file_path.read_text(encoding="utf-8", errors="replace").splitlines()
        limit = limit or DEFAULT_MAX_LINES
        window = lines[offset:offset + limit]

        numbered = "\n".join(f"{offset + i + 1:>6}\t{line}" for i, line in enumerate(window))
        remaining = len(lines) - (offset + len(window))
        if remaining > 0:
            numbered += f"\n\n... ({remaining} more lines)"

        return numbered, len(lines)

    def write_file(self, path: str, content: str) -> str:
        """Write content to a file, creating parent directories."""
        file_path = self.checked_path(path)

        if file_path.is_dir():
            raise IsADirectoryError(f"Path is a directory: {path}")

        existed = file_path.exists()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")

        action = "Updated" if existed else "Created"
        return f"{action} {file_path.relative_to(self.working_dir)} ({len(content)} characters)"

    def list_files(
        self,
        path: str = ".",
        pattern: str = "*",
        recursive: bool = False,
    ) -> list[str]:
        """List files in a directory, relative to it."""
        dir_path = self.checked_path(path)

        if not dir_path.exists():
            raise FileNotFoundError(f"Directory not found: {path}")

        if not dir_path.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {path}")

        candidates = dir_path.rglob(pattern) if recursive else dir_path.glob(pattern)

        files = []
        for file_path in candidates:
            relative = file_path.relative_to(dir_path)
            if any(part in SKIPPED_DIRS for part in relative.parts[:-1]):
                continue
            if file_path.is_file():
                files.append(str(relative))

        return sorted(files)

    def edit_file(self, path: str, old_string: str, new_string: str, replace_all: bool = False) -> tuple[str, int, str]:
        """Replace an exact string in a file.

        ``old_string`` must occur exactly once unless ``replace_all`` is set.
        Returns the summary line, the number of replacements and a unified diff.
        """
        file_path = self.checked_path(path)

        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {path}")

        if not file_path.is_file():
            raise IsADirectoryError(f"Path is a directory: {path}")

        if not old_string:
            raise ValueError("old_string must not be empty")

        if old_string == new_string:
            raise ValueError("old_string and new_string are identical")

        content = file_path.read_text(encoding="utf-8")
        count = content.count(old_string)

        if count == 0:
            raise ValueError(f"old_string not found in {path}")
        if count > 1 and not replace_all:
            raise ValueError(
                f"old_string found {count} times in {path}. "
                "Add surrounding context to make it unique or set replace_all."
            )

        replacements = count if replace_all else 1
        updated = content.replace(old_string, new_string, -1 if replace_all else 1)
        file_path.write_text(updated, encoding="utf-8")

        relative = str(file_path.resolve().relative_to(self.working_dir))
        diff = "".join(difflib.unified_diff(
            content.splitlines(keepends=True),
            updated.splitlines(keepends=True),
            fromfile=f"a/{relative}",
            tofile=f"b/{relative}",
        ))
        plural = "" if replacements == 1 else "s"
        return f"Edited {relative} ({replacements} replacement{plural})", replacements, diff

    def glob(self, pattern: str, path: str = ".") -> list[str]:
        """Files under ``path`` matching a glob pattern such as ``**/*.py``, relative to the working directory."""
        dir_path = self.checked_path(path)

        if not dir_path.exists():
            raise FileNotFoundError(f"Directory not found: {path}")

        if not dir_path.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {path}")

        files = []
        for file_path in dir_path.glob(pattern):
            if not file_path.is_file() or not self._is_safe_path(file_path):
                continue
            relative = file_path.resolve().relative_to(self.working_dir)
            if any(part in SKIPPED_DIRS for part in relative.parts[:-1]):
                continue
            files.append(str(relative))

        return sorted(files)


def create_file_tools(manager: FileManager) -> list[Tool]:
    """Create file operation tools bound to ``manager``."""

    async def read_file_handler(path: str, offset: int = 0, limit: int | None = None) -> ToolResult:
        try:
            content, total = manager.read_file(path, offset, limit)
        except (OSError, ValueError) as e:
            return ToolResult(success=False, error=str(e))
        return ToolResult(success=True, output=content, metadata={"path": path, "lines": total})

    async def write_file_handler(path: str, content: str) -> ToolResult:
        try:
            message = manager.write_file(path, content)
        except (OSError, ValueError) as e:
            return ToolResult(success=False, error=str(e))
        return ToolResult(success=True, output=message, metadata={"path": path})

    async def list_files_handler(path: str = ".", pattern: str = "*", recursive: bool = False) -> ToolResult:
        try:
            files = manager.list_files(path, pattern, recursive)
        except (OSError, ValueError) as e:
            return ToolResult(success=False, error=str(e))

        if not files:
            return ToolResult(success=True, output="No files found.", metadata={"count": 0})

        output = "\n".join(files[:MAX_LISTED_FILES])
        if len(files) > MAX_LISTED_FILES:
            output += f"\n\n... and {len(files) - MAX_LISTED_FILES} more files"

        return ToolResult(success=True, output=output, metadata={"count": len(files)})

    async def edit_file_handler(
        path: str,
        old_string: str,
        new_string: str,
        replace_all: bool = False,
    ) -> ToolResult:
        try:
            message, replacements, diff = manager.edit_file(path, old_string, new_string, replace_all)
        except (OSError, ValueError) as e:
            return ToolResult(success=False, error=str(e))
        return ToolResult(
            success=True,
            output=message,
            metadata={"path": path, "replacements": replacements, "diff": diff},
        )

    async def glob_handler(pattern: str, path: str = ".") -> ToolResult:
        try:
            files = manager.glob(pattern, path)
        except (OSError, ValueError, NotImplementedError) as e:
            return ToolResult(success=False, error=str(e))

        if not files:
            return ToolResult(success=True, output=f"No files matched {pattern}", metadata={"count": 0})

        output = "\n".join(files[:MAX_GLOB_RESULTS])
        if len(files) > MAX_GLOB_RESULTS:
            output += f"\n\n(Results limited to {MAX_GLOB_RESULTS} files. Total matches: {len(files)})"

        return ToolResult(
            success=True,
            output=output,
            metadata={"count": len(files), "truncated": len(files) > MAX_GLOB_RESULTS},
        )

    read_file = Tool(
        name="read_file",
        description="Read a text file in the working directory. Lines are returned numbered.",
        parameters=[
            ToolParameter(
                name="path",
                param_type="string",
                description="Path to the file (relative to the working directory or absolute)",
                required=True,
            ),
            ToolParameter(
                name="offset",
                param_type="integer",
                description="Line to start from, zero-based (default: 0)",
                required=False,
            ),
            ToolParameter(
                name="limit",
                param_type="integer",
                description=f"Maximum lines to read (default: {DEFAULT_MAX_LINES})",
                required=False,
            ),
        ],
        handler=read_file_handler,
        read_only=True,
    )

    write_file = Tool(
        name="write_file",
        description="Create or overwrite a file in the working directory.",
        parameters=[
            ToolParameter(
                name="path",
                param_type="string",
                description="Path to the file",
                required=True,
            ),
            ToolParameter(
                name="content",
                param_type="string",
                description="Full content to write",
                required=True,
            ),
        ],
        handler=write_file_handler,
    )

    list_files = Tool(
        name="list_files",
        description="List files in a directory of the working tree.",
        parameters=[
            ToolParameter(
                name="path",
                param_type="string",
                description="Directory path (default: working directory)",
                required=False,
            ),
            ToolParameter(
                name="pattern",
                param_type="string",
                description="Glob pattern to filter files (default: *)",
                required=False,
            ),
            ToolParameter(
                name="recursive",
                param_type="boolean",
                description="Search recursively (default: false)",
                required=False,
            ),
        ],
        handler=list_files_handler,
        read_only=True,
    )

    edit_file = Tool(
        name="edit_file",
        description=(
            "Replace an exact string in a file. Read the file first and copy the text exactly, "
            "including indentation. Fails when old_string is missing, or appears more than once "
            "and replace_all is not set."
        ),
        parameters=[
            ToolParameter(
                name="path",
                param_type="string",
                description="Path to the file",
                required=True,
            ),
            ToolParameter(
                name="old_string",
                param_type="string",
                description="The exact text to replace",
                required=True,
            ),
            ToolParameter(
                name="new_string",
                param_type="string",
                description="The replacement text",
                required=True,
            ),
            ToolParameter(
                name="replace_all",
                param_type="boolean",
                description="Replace every occurrence (default: false)",
                required=False,
            ),
        ],
        handler=edit_file_handler,
    )

    glob = Tool(
        name="glob",
        description="Find files by name pattern, such as '**/*.py' or 'src/**/test_*.py'.",
        parameters=[
            ToolParameter(
                name="pattern",
                param_type="string",
                description="Glob pattern to match files against",
                required=True,
            ),
            ToolParameter(
                name="path",
                param_type="string",
                description="Directory to search in (default: working directory)",
                required=False,
            ),
        ],
        handler=glob_handler,
        read_only=True,
    )

    return [read_file, write_file, edit_file, list_files, glob]

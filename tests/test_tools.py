"""
Tests for tools module.
"""

import asyncio
import shutil
import sys

import pytest

from ii_code_agent.agent.session import InMemorySessionStore
from ii_code_agent.tools.base import Tool, ToolParameter, ToolResult
from ii_code_agent.tools.file_tool import FileManager, create_file_tools
from ii_code_agent.tools.registry import ToolRegistry, strip_null_values
from ii_code_agent.tools.search_tool import ContentSearcher, create_search_tools
from ii_code_agent.tools.shell_tool import ShellConfig, ShellExecutor, create_shell_tools
from ii_code_agent.tools.todo_tool import create_todo_tools


def _echo_tool(**overrides) -> Tool:
    async def handler(text: str, repeat: int = 1, mode: str = "plain") -> ToolResult:
        return ToolResult(success=True, output=" ".join([text] * repeat) + f" ({mode})")

    options = dict(
        name="echo",
        description="Echo text back",
        parameters=[
            ToolParameter(name="text", param_type="string", description="Text to echo"),
            ToolParameter(name="repeat", param_type="integer", description="Repeat count", required=False),
            ToolParameter(
                name="mode",
                param_type="string",
                description="Output mode",
                required=False,
                enum=["plain", "loud"],
            ),
        ],
        handler=handler,
    )
    options.update(overrides)
    return Tool(**options)


def _by_name(tools: list[Tool]) -> dict[str, Tool]:
    return {tool.name: tool for tool in tools}


def test_tool_result_content():
    """Test rendering tool results for the model."""
    assert ToolResult(success=True, output="done").to_content() == "done"
    assert ToolResult(success=False, error="boom").to_content() == "Error: boom"
    assert ToolResult(success=False).to_content() == "Error: Unknown error"


def test_parameters_schema():
    """Test converting parameters to JSON Schema."""
    schema = _echo_tool().get_parameters_schema()

    assert schema["type"] == "object"
    assert schema["required"] == ["text"]
    assert schema["properties"]["repeat"]["type"] == "integer"
    assert schema["properties"]["mode"]["enum"] == ["plain", "loud"]


def test_strip_null_values():
    """Test that nulls are removed at every depth."""
    assert strip_null_values({"a": 1, "b": None, "c": {"d": None, "e": [{"f": None, "g": 2}]}}) == {
        "a": 1,
        "c": {"e": [{"g": 2}]},
    }


def test_registry_definitions_and_subset():
    """Test listing, subsetting and exporting tools."""
    registry = ToolRegistry()
    registry.register(_echo_tool())
    registry.register(_echo_tool(name="shout"))

    assert len(registry) == 2
    assert "echo" in registry
    assert [d.name for d in registry.get_definitions()] == ["echo", "shout"]

    subset = registry.subset(["shout", "missing"])
    assert subset.list_tools() == ["shout"]

    registry.unregister("shout")
    assert registry.list_tools() == ["echo"]
    assert subset.list_tools() == ["shout"]


@pytest.mark.asyncio
async def test_registry_executes_with_validated_arguments():
    """Test that null optionals are dropped and handler defaults apply."""
    registry = ToolRegistry()
    registry.register(_echo_tool())

    result = await registry.execute("echo", {"text": "hi", "repeat": 2, "mode": None})

    assert result.success is True
    assert result.output == "hi hi (plain)"


@pytest.mark.asyncio
async def test_registry_unknown_tool():
    """Test calling a tool that is not registered."""
    result = await ToolRegistry().execute("nope", {})

    assert result.success is False
    assert result.to_content() == "Error: Tool 'nope' not found"


@pytest.mark.asyncio
@pytest.mark.parametrize("arguments, field", [
    ({}, "text"),
    ({"text": "hi", "repeat": "many"}, "repeat"),
    ({"text": "hi", "mode": "whisper"}, "mode"),
])
async def test_registry_rejects_invalid_arguments(arguments, field):
    """Test schema validation failures come back as tool errors."""
    registry = ToolRegistry()
    registry.register(_echo_tool())

    result = await registry.execute("echo", arguments)

    assert result.success is False
    assert result.error.startswith(f"Invalid parameters: {field}:")


@pytest.mark.asyncio
async def test_registry_timeout():
    """Test that a slow handler is cut off."""
    async def slow() -> ToolResult:
        await asyncio.sleep(10)
        return ToolResult(success=True, output="late")

    registry = ToolRegistry(default_timeout=0.05)
    registry.register(Tool(name="slow", description="Sleeps", parameters=[], handler=slow))

    result = await registry.execute("slow", {})

    assert result.success is False
    assert result.error == "Tool 'slow' timed out after 0.05 seconds"


@pytest.mark.asyncio
async def test_registry_handler_exception():
    """Test that handler exceptions become failed results."""
    async def broken() -> ToolResult:
        raise RuntimeError("disk on fire")

    registry = ToolRegistry()
    registry.register(Tool(name="broken", description="Fails", parameters=[], handler=broken))

    result = await registry.execute("broken", {})

    assert result.success is False
    assert result.error == "disk on fire"


@pytest.mark.asyncio
async def test_bash_tool_success(tmp_path):
    """Test running a command in the working directory."""
    bash = create_shell_tools(ShellExecutor(tmp_path))[0]

    result = await bash.execute(command="echo hello && pwd")

    assert result.success is True
    assert "hello" in result.output
    assert str(tmp_path.resolve()) in result.output
    assert result.metadata["exit_code"] == 0


@pytest.mark.asyncio
async def test_bash_tool_failure():
    """Test that a non-zero exit is reported as an error."""
    bash = create_shell_tools(ShellExecutor())[0]

    result = await bash.execute(command="echo oops >&2; exit 3")

    assert result.success is False
    content = result.to_content()
    assert content.startswith("Error:")
    assert "oops" in content
    assert "Exit code: 3" in content


@pytest.mark.asyncio
async def test_bash_tool_blocked_command():
    """Test that dangerous commands are refused."""
    bash = create_shell_tools(ShellExecutor())[0]

    result = await bash.execute(command="rm -rf /")

    assert result.success is False
    assert "blocked" in result.error


@pytest.mark.asyncio
async def test_shell_executor_timeout():
    """Test that long-running commands are killed."""
    executor = ShellExecutor(config=ShellConfig(timeout_seconds=0.2))

    output = await executor.execute(f'"{sys.executable}" -c "import time; time.sleep(5)"')

    assert output.timed_out is True
    assert output.returncode == -1


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")
async def test_registry_timeout_kills_bash_command(tmp_path):
    """Test that a bash command cut off by the registry stops running."""
    registry = ToolRegistry(default_timeout=0.3)
    registry.register_all(create_shell_tools(ShellExecutor(tmp_path)))

    result = await registry.execute("bash", {"command": "sleep 1; touch marker", "timeout": 30})

    assert result.success is False
    assert result.error == "Tool 'bash' timed out after 0.3 seconds"
    await asyncio.sleep(1.5)
    assert not (tmp_path / "marker").exists()


def test_shell_output_truncation():
    """Test output limits."""
    executor = ShellExecutor(config=ShellConfig(max_output_lines=3, max_output_chars=1000))

    output, truncated = executor._truncate_output("\n".join(str(i) for i in range(10)))

    assert truncated is True
    assert output.startswith("0\n1\n2")
    assert "[Output truncated to 3 lines]" in output


@pytest.mark.asyncio
async def test_file_tools_round_trip(tmp_path):
    """Test writing, reading and listing files."""
    tools = _by_name(create_file_tools(FileManager(tmp_path)))

    written = await tools["write_file"].execute(path="src/app.py", content="a = 1\nb = 2\n")
    assert written.success is True
    assert written.output == "Created src/app.py (12 characters)"

    read = await tools["read_file"].execute(path="src/app.py", offset=1)
    assert read.success is True
    assert read.output == "     2\tb = 2"
    assert read.metadata["lines"] == 2

    listed = await tools["list_files"].execute(path=".", recursive=True)
    assert listed.output == "src/app.py"

    updated = await tools["write_file"].execute(path="src/app.py", content="")
    assert updated.output.startswith("Updated")


@pytest.mark.asyncio
async def test_file_tools_refuse_paths_outside_working_dir(tmp_path):
    """Test that paths escaping the working directory are denied."""
    workdir = tmp_path / "project"
    workdir.mkdir()
    tools = _by_name(create_file_tools(FileManager(workdir)))

    escaped = await tools["read_file"].execute(path="../secret.txt")
    assert escaped.success is False
    assert "Access denied" in escaped.error

    blocked = await tools["write_file"].execute(path=".ssh/id_rsa", content="x")
    assert blocked.success is False


@pytest.mark.asyncio
async def test_read_missing_file(tmp_path):
    """Test reading a file that does not exist."""
    read_file = _by_name(create_file_tools(FileManager(tmp_path)))["read_file"]

    result = await read_file.execute(path="missing.txt")

    assert result.success is False
    assert "File not found" in result.error


def test_file_tools_read_only_flags(tmp_path):
    """Test which file tools are read-only."""
    tools = _by_name(create_file_tools(FileManager(tmp_path)))

    assert tools["read_file"].read_only is True
    assert tools["list_files"].read_only is True
    assert tools["glob"].read_only is True
    assert tools["write_file"].read_only is False
    assert tools["edit_file"].read_only is False


@pytest.mark.asyncio
async def test_edit_file_replaces_unique_string(tmp_path):
    """Test an exact-string edit and its diff."""
    (tmp_path / "app.py").write_text("def run():\n    return 1\n")
    edit_file = _by_name(create_file_tools(FileManager(tmp_path)))["edit_file"]

    result = await edit_file.execute(path="app.py", old_string="return 1", new_string="return 2")

    assert result.success is True
    assert result.output == "Edited app.py (1 replacement)"
    assert (tmp_path / "app.py").read_text() == "def run():\n    return 2\n"
    assert "-    return 1" in result.metadata["diff"]
    assert "+    return 2" in result.metadata["diff"]


@pytest.mark.asyncio
async def test_edit_file_requires_unique_match(tmp_path):
    """Test that ambiguous edits fail unless replace_all is set."""
    (tmp_path / "names.py").write_text("x = old\ny = old\n")
    edit_file = _by_name(create_file_tools(FileManager(tmp_path)))["edit_file"]

    ambiguous = await edit_file.execute(path="names.py", old_string="old", new_string="new")
    assert ambiguous.success is False
    assert "found 2 times" in ambiguous.error
    assert (tmp_path / "names.py").read_text() == "x = old\ny = old\n"

    replaced = await edit_file.execute(path="names.py", old_string="old", new_string="new", replace_all=True)
    assert replaced.output == "Edited names.py (2 replacements)"
    assert (tmp_path / "names.py").read_text() == "x = new\ny = new\n"


@pytest.mark.asyncio
@pytest.mark.parametrize("old_string, new_string, message", [
    ("missing", "x", "old_string not found"),
    ("same", "same", "identical"),
    ("", "x", "must not be empty"),
])
async def test_edit_file_rejects_bad_edits(tmp_path, old_string, new_string, message):
    (tmp_path / "a.txt").write_text("same text\n")
    edit_file = _by_name(create_file_tools(FileManager(tmp_path)))["edit_file"]

    result = await edit_file.execute(path="a.txt", old_string=old_string, new_string=new_string)

    assert result.success is False
    assert message in result.error


@pytest.mark.asyncio
async def test_glob_tool(tmp_path):
    """Test recursive name matching, skipping tool caches."""
    for name in ("src/app.py", "src/pkg/util.py", "README.md", "node_modules/dep/index.py"):
        (tmp_path / name).parent.mkdir(parents=True, exist_ok=True)
        (tmp_path / name).write_text("")
    glob = _by_name(create_file_tools(FileManager(tmp_path)))["glob"]

    result = await glob.execute(pattern="**/*.py")
    assert result.output == "src/app.py\nsrc/pkg/util.py"
    assert result.metadata["count"] == 2

    scoped = await glob.execute(pattern="*.py", path="src/pkg")
    assert scoped.output == "src/pkg/util.py"

    nothing = await glob.execute(pattern="*.rs")
    assert nothing.output == "No files matched *.rs"


def _search_tree(root) -> None:
    (root / "src").mkdir()
    (root / "src" / "parser.py").write_text("import re\n\ndef parse(text):\n    return text.split()\n")
    (root / "src" / "lexer.py").write_text("def parse_token(tok):\n    return tok\n")
    (root / "notes.md").write_text("parse everything\n")


@pytest.mark.asyncio
@pytest.mark.parametrize("use_ripgrep", [
    False,
    pytest.param(True, marks=pytest.mark.skipif(shutil.which("rg") is None, reason="ripgrep not installed")),
])
async def test_grep_tool(tmp_path, use_ripgrep):
    """Test content search with and without ripgrep."""
    _search_tree(tmp_path)
    grep = create_search_tools(ContentSearcher(FileManager(tmp_path), use_ripgrep=use_ripgrep))[0]

    result = await grep.execute(pattern=r"def parse\w*", include="*.py")

    assert result.success is True
    assert result.output.splitlines() == [
        "src/lexer.py:1: def parse_token(tok):",
        "src/parser.py:3: def parse(text):",
    ]

    scoped = await grep.execute(pattern="parse", path="notes.md")
    assert scoped.output == "notes.md:1: parse everything"

    nothing = await grep.execute(pattern="nonexistent_symbol")
    assert nothing.output == "No matches found for pattern 'nonexistent_symbol'"
    assert nothing.metadata["count"] == 0


@pytest.mark.asyncio
async def test_grep_limits_matches(tmp_path):
    for i in range(12):
        (tmp_path / f"f{i:02}.txt").write_text("hit " + "x" * 200 + "\n" + "hit\n" * 14)
    grep = create_search_tools(ContentSearcher(FileManager(tmp_path), use_ripgrep=False))[0]

    result = await grep.execute(pattern="hit")

    lines = result.output.splitlines()
    assert result.metadata == {"count": 100, "truncated": True}
    assert lines[0].endswith("...")
    assert len(lines[0].split(": ", 1)[1]) == 120
    assert lines[-1].startswith("(Results limited to 100 matches")
    assert sum(1 for line in lines if line.startswith("f00.txt:")) == 10


@pytest.mark.asyncio
async def test_grep_rejects_invalid_regex_and_escapes(tmp_path):
    grep = create_search_tools(ContentSearcher(FileManager(tmp_path), use_ripgrep=False))[0]

    invalid = await grep.execute(pattern="(unclosed")
    assert invalid.success is False
    assert "Invalid regex pattern" in invalid.error

    escaped = await grep.execute(pattern="x", path="../")
    assert escaped.success is False
    assert "Access denied" in escaped.error


@pytest.mark.asyncio
async def test_todo_tools():
    """Test replacing and reading the session todo list."""
    store = InMemorySessionStore()
    store.create("s1")
    tools = _by_name(create_todo_tools(store, lambda: "s1"))

    empty = await tools["todo_read"].execute()
    assert empty.output == "No todos found for this session."

    written = await tools["todo_write"].execute(todos=[
        {"id": "1", "content": "Write parser", "status": "completed", "priority": "high"},
        {"id": "2", "content": "Add tests", "status": "in_progress", "priority": "medium"},
        {"id": "3", "content": "Update docs", "status": "pending", "priority": "low"},
    ])
    assert written.output == "Todo list updated. 2 tasks remaining."

    session = await store.read("s1")
    assert [t.content for t in session.todos] == ["Write parser", "Add tests", "Update docs"]

    listed = await tools["todo_read"].execute()
    assert "[x] Write parser" in listed.output
    assert "[>] Add tests" in listed.output
    assert listed.metadata["total"] == 3


@pytest.mark.asyncio
async def test_todo_write_rejects_bad_status():
    """Test that an unknown status is refused and the list is untouched."""
    store = InMemorySessionStore()
    store.create("s1")
    registry = ToolRegistry()
    registry.register_all(create_todo_tools(store, lambda: "s1"))

    result = await registry.execute("todo_write", {
        "todos": [{"id": "1", "content": "x", "status": "done", "priority": "high"}],
    })

    assert result.success is False
    assert result.error.startswith("Invalid parameters:")
    assert (await store.read("s1")).todos == []

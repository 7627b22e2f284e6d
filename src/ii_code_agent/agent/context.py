"""
Explicit wiring of the runtime's collaborators.

One AgentContext owns the model clients, the transport, the tool registry,
the session store and the compaction and checkpoint engines. Subsystems get
what they need from it instead of reaching for module-level singletons.
"""

from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from ..config import Settings, get_settings
from ..llm.base import BaseLLM
from ..llm.factory import create_llm
from ..llm.retry import RetryingTransport
from ..tools.file_tool import FileManager, create_file_tools
from ..tools.registry import ToolRegistry
from ..tools.search_tool import ContentSearcher, create_search_tools
from ..tools.shell_tool import ShellConfig, ShellExecutor, create_shell_tools
from ..tools.task_tool import SubagentRunner, create_task_tools
from ..tools.todo_tool import create_todo_tools
from .checkpoint import CheckpointStore
from .compaction import CompactionConfig, CompactionEngine
from .session import InMemorySessionStore, SessionStore

logger = structlog.get_logger()


@dataclass
class AgentContext:
    """Everything a session coordinator needs, created once per process or test."""

    settings: Settings
    llm: BaseLLM
    subagent_llm: BaseLLM
    transport: RetryingTransport
    registry: ToolRegistry
    store: SessionStore
    compaction: CompactionEngine
    checkpoints: CheckpointStore
    working_dir: Path
    _session_var: ContextVar[str | None] = field(
        default_factory=lambda: ContextVar("ii_session_id", default=None),
        repr=False,
    )

    @property
    def current_session_id(self) -> str:
        """The session the running task belongs to."""
        session_id = self._session_var.get()
        if session_id is None:
            raise KeyError("No active session")
        return session_id

    def bind_session(self, session_id: str) -> Token:
        return self._session_var.set(session_id)

    def unbind_session(self, token: Token) -> None:
        self._session_var.reset(token)

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        llm: BaseLLM | None = None,
        subagent_llm: BaseLLM | None = None,
        store: SessionStore | None = None,
        transport: RetryingTransport | None = None,
        working_dir: str | Path | None = None,
    ) -> "AgentContext":
        """Build a context from settings, with any collaborator overridable."""
        settings = settings or get_settings()
        working_dir = Path(working_dir or settings.workspace_dir).expanduser().resolve()

        llm = llm or create_llm(settings=settings)
        if subagent_llm is None:
            if settings.subagent_model == llm.model:
                subagent_llm = llm
            else:
                subagent_llm = create_llm(settings.get_llm_config(model=settings.subagent_model))

        transport = transport or RetryingTransport.from_settings(settings)
        store = store or InMemorySessionStore(
            context_window=settings.context_window,
            working_dir=str(working_dir),
        )

        compaction = CompactionEngine(
            store=store,
            llm=llm,
            transport=transport,
            config=CompactionConfig.from_settings(settings),
        )
        checkpoints = CheckpointStore(working_dir, branch_prefix=settings.checkpoint_branch_prefix)

        context = cls(
            settings=settings,
            llm=llm,
            subagent_llm=subagent_llm,
            transport=transport,
            registry=ToolRegistry(default_timeout=settings.tool_timeout_seconds),
            store=store,
            compaction=compaction,
            checkpoints=checkpoints,
            working_dir=working_dir,
        )
        context._register_default_tools()
        return context

    def _register_default_tools(self) -> None:
        executor = ShellExecutor(
            self.working_dir,
            ShellConfig(timeout_seconds=self.settings.tool_timeout_seconds),
        )
        self.registry.register_all(create_shell_tools(executor))
        files = FileManager(self.working_dir)
        self.registry.register_all(create_file_tools(files))
        self.registry.register_all(create_search_tools(ContentSearcher(files)))
        self.registry.register_all(create_todo_tools(self.store, lambda: self.current_session_id))

        # Subagents see a snapshot of the registry taken before the task tools exist
        runner = SubagentRunner(
            llm=self.subagent_llm,
            registry=self.registry.subset(self.registry.list_tools()),
            transport=self.transport,
            max_iterations=self.settings.max_tool_iterations,
        )
        self.registry.register_all(create_task_tools(runner))

        logger.debug("Registered default tools", tools=self.registry.list_tools())

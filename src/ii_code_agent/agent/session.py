"""
Session state and the store interface the runtime reads and writes through.
"""

import asyncio
import copy
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

import structlog

from ..llm.base import LLMMessage

logger = structlog.get_logger()

TodoStatus = Literal["pending", "in_progress", "completed", "cancelled"]
TodoPriority = Literal["high", "medium", "low"]

DEFAULT_CONTEXT_WINDOW = 200_000


@dataclass
class Todo:
    """One entry of the session's todo list."""

    id: str
    content: str
    status: TodoStatus = "pending"
    priority: TodoPriority = "medium"

    @classmethod
    def create(cls, content: str, priority: TodoPriority = "medium") -> "Todo":
        return cls(id=str(uuid.uuid4()), content=content, priority=priority)

    @property
    def is_open(self) -> bool:
        return self.status in ("pending", "in_progress")


@dataclass
class Session:
    """A conversation with its transcript and todo list."""

    id: str
    messages: list[LLMMessage] = field(default_factory=list)
    todos: list[Todo] = field(default_factory=list)
    context_window: int = DEFAULT_CONTEXT_WINDOW
    working_dir: str = "."
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def turn_count(self) -> int:
        """Number of operator messages, used as the checkpoint turn index."""
        return sum(1 for m in self.messages if m.role == "user")


class SessionStore(Protocol):
    """What the runtime needs from session persistence."""

    async def read(self, session_id: str) -> Session:
        ...

    async def update(self, session_id: str, **changes: Any) -> Session:
        ...


class InMemorySessionStore:
    """Process-local SessionStore.

    ``read`` returns a snapshot; callers persist changes with ``update``.
    """

    def __init__(self, context_window: int = DEFAULT_CONTEXT_WINDOW, working_dir: str = "."):
        self.context_window = context_window
        self.working_dir = working_dir
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    def create(self, session_id: str | None = None, **kwargs: Any) -> Session:
        session_id = session_id or str(uuid.uuid4())
        kwargs.setdefault("context_window", self.context_window)
        kwargs.setdefault("working_dir", self.working_dir)
        session = Session(id=session_id, **kwargs)
        self._sessions[session_id] = session
        logger.info("Created new session", session_id=session_id)
        return session

    def get_or_create(self, session_id: str) -> Session:
        if session_id not in self._sessions:
            return self.create(session_id)
        return self._sessions[session_id]

    async def read(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Session not found: {session_id}")
        return replace(
            session,
            messages=list(session.messages),
            todos=[copy.copy(t) for t in session.todos],
            metadata=dict(session.metadata),
        )

    async def update(self, session_id: str, **changes: Any) -> Session:
        allowed = {f.name for f in fields(Session)} - {"id", "created_at"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")

        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise KeyError(f"Session not found: {session_id}")
            for name, value in changes.items():
                setattr(session, name, value)
            session.updated_at = datetime.now(timezone.utc)
            return session

    def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def list_sessions(self) -> list[str]:
        return list(self._sessions)

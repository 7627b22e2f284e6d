"""
Conversation Compaction - keeps a session inside the model's context window.

When the estimated context usage crosses the trigger threshold, older
messages are summarized by the model and replaced with a single system
message, while the most recent messages are kept verbatim.

Key features:
- Pluggable token estimation (chars/4 by default)
- Per-session usage cache with a short TTL
- Old tool outputs pruned before summarizing
- Structured summary prompt so the task survives the cut
- Continuation prompts for automatic and manual compaction
"""

import math
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Protocol

import structlog

from ..errors import CompactionInProgressError
from ..llm.base import BaseLLM, LLMMessage
from ..llm.retry import RetryingTransport
from .orchestrator import parse_tool_arguments
from .session import SessionStore, Todo

logger = structlog.get_logger()

# System prompt plus tool schemas, sent with every request
BASE_OVERHEAD_TOKENS = 5000
PER_TOOL_CALL_OVERHEAD = 10
PER_MESSAGE_OVERHEAD = 5

DEFAULT_WARNING_THRESHOLD = 0.70
DEFAULT_TRIGGER_THRESHOLD = 0.85
DEFAULT_KEEP_RECENT = 20
DEFAULT_KEEP_TOOL_OUTPUTS = 3
DEFAULT_CACHE_TTL = 30.0

PRUNED_OUTPUT_PLACEHOLDER = "[Tool output pruned during compaction]"
SUMMARY_PREFIX = "Previous conversation summary:\n\n"
SUMMARY_FAILED_NOTICE = "Failed to generate summary. Manual compaction required."
NOTHING_TO_COMPACT_PROMPT = (
    "The conversation is already within size limits - no compaction needed.\n\n"
    "What would you like to focus on next?"
)

MAX_TRANSCRIPT_ENTRY_CHARS = 2000

SUMMARY_SYSTEM_PROMPT = """You are summarizing a coding session so the work can continue in a fresh context.
Be factual and precise. Keep the summary under 800 words. Do not invent details that are not in the conversation."""


class TokenEstimator(Protocol):
    def count(self, text: str) -> int:
        ...


class CharTokenEstimator:
    """Roughly four characters per token."""

    def __init__(self, chars_per_token: int = 4):
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)


@dataclass
class CompactionConfig:
    """Configuration for conversation compaction."""

    warning_threshold: float = DEFAULT_WARNING_THRESHOLD
    trigger_threshold: float = DEFAULT_TRIGGER_THRESHOLD
    keep_recent: int = DEFAULT_KEEP_RECENT
    keep_tool_outputs: int = DEFAULT_KEEP_TOOL_OUTPUTS
    cache_ttl: float = DEFAULT_CACHE_TTL
    base_overhead: int = BASE_OVERHEAD_TOKENS
    summary_temperature: float = 0.3
    summary_max_tokens: int = 1000

    @classmethod
    def from_settings(cls, settings: Any) -> "CompactionConfig":
        return cls(
            warning_threshold=settings.compact_warning_threshold,
            trigger_threshold=settings.compact_trigger_threshold,
            keep_recent=settings.compact_keep_recent,
            keep_tool_outputs=settings.compact_keep_tool_outputs,
            cache_ttl=settings.compact_cache_ttl_seconds,
            summary_temperature=settings.summary_temperature,
            summary_max_tokens=settings.summary_max_tokens,
        )


@dataclass
class CompactResult:
    """Result of a compaction operation."""

    compacted: bool
    summary: str
    removed_count: int
    new_message_count: int
    continuation_prompt: str | None = None
    pruned_count: int = 0


def estimate_message_tokens(message: LLMMessage, estimator: TokenEstimator) -> int:
    tokens = estimator.count(message.content or "")
    tokens += estimator.count(message.reasoning_content or "")
    for call in message.tool_calls:
        tokens += (
            estimator.count(call.name)
            + estimator.count(call.arguments)
            + estimator.count(call.result or "")
            + PER_TOOL_CALL_OVERHEAD
        )
    return tokens + PER_MESSAGE_OVERHEAD


def estimate_tokens(
    messages: list[LLMMessage],
    estimator: TokenEstimator | None = None,
    base_overhead: int = BASE_OVERHEAD_TOKENS,
) -> int:
    """Estimate the prompt size of the next request carrying ``messages``."""
    estimator = estimator or CharTokenEstimator()
    return base_overhead + sum(estimate_message_tokens(m, estimator) for m in messages)


def _is_tool_bearing(message: LLMMessage) -> bool:
    return message.role == "tool" or bool(message.tool_calls)


def prune_tool_outputs(messages: list[LLMMessage], keep: int) -> tuple[list[LLMMessage], int]:
    """Replace tool output with a placeholder, except in the last ``keep`` tool-bearing messages.

    Returns the new list and how many outputs were replaced. Input messages
    are not modified.
    """
    bearing = [i for i, m in enumerate(messages) if _is_tool_bearing(m)]
    protected = set(bearing[-keep:]) if keep > 0 else set()

    pruned: list[LLMMessage] = []
    count = 0
    for i, msg in enumerate(messages):
        if i in protected or not _is_tool_bearing(msg):
            pruned.append(msg)
            continue

        if msg.role == "tool":
            if msg.content and msg.content != PRUNED_OUTPUT_PLACEHOLDER:
                count += 1
            pruned.append(replace(msg, content=PRUNED_OUTPUT_PLACEHOLDER))
            continue

        calls = []
        for call in msg.tool_calls:
            if call.result and call.result != PRUNED_OUTPUT_PLACEHOLDER:
                count += 1
                call = replace(call, result=PRUNED_OUTPUT_PLACEHOLDER)
            calls.append(call)
        pruned.append(replace(msg, tool_calls=calls))

    return pruned, count


def _clip(text: str, limit: int = MAX_TRANSCRIPT_ENTRY_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"... [{len(text) - limit} more characters]"


def _touched_files(messages: list[LLMMessage]) -> list[str]:
    seen: dict[str, None] = {}
    for msg in messages:
        for call in msg.tool_calls:
            args = parse_tool_arguments(call.arguments)
            for key in ("path", "file_path"):
                value = args.get(key)
                if isinstance(value, str) and value:
                    seen.setdefault(value, None)
    return list(seen)


def format_transcript(messages: list[LLMMessage]) -> str:
    parts = []
    for msg in messages:
        entry = f"{msg.role.upper()}: {_clip(msg.content or '')}"
        if msg.tool_calls:
            names = ", ".join(call.name for call in msg.tool_calls if call.name)
            entry += f"\n[Called tools: {names}]"
        parts.append(entry)
    return "\n\n".join(parts)


def _format_todos(todos: list[Todo]) -> str:
    open_todos = [t for t in todos if t.is_open]
    if not open_todos:
        return "(none)"
    return "\n".join(f"- [{t.status}] ({t.priority}) {t.content}" for t in open_todos)


def build_summary_prompt(messages: list[LLMMessage], todos: list[Todo] | None = None) -> str:
    """The user prompt for the summarization call."""
    user_messages = [m.content for m in messages if m.role == "user" and m.content]
    files = _touched_files(messages)

    literal_users = "\n".join(f"{i}. {_clip(text)}" for i, text in enumerate(user_messages, 1)) or "(none)"
    file_hints = "\n".join(f"- {path}" for path in files) or "(none recorded)"

    return f"""Summarize the conversation below. Use exactly these sections:

1. Primary Request and Intent: every explicit request the user made, in order.
2. Key Technical Concepts: technologies, frameworks and patterns discussed.
3. Files and Code Sections: files read, created or modified, and why each matters.
4. Errors and Fixes: errors encountered and how each was resolved.
5. Pending Tasks: work that was asked for but is not finished.
6. All User Messages: reproduce the user messages listed below verbatim.
7. Current Work: what was being done immediately before this summary.

Files referenced by tool calls:
{file_hints}

Open todo items:
{_format_todos(todos or [])}

User messages:
{literal_users}

Conversation:
{format_transcript(messages)}"""


def _todo_lines(todos: list[Todo]) -> list[str]:
    lines = []
    for todo in todos:
        if todo.is_open:
            status = "[in progress]" if todo.status == "in_progress" else "[pending]"
            lines.append(f"- {status} {todo.content}")
    return lines


def continuation_prompt(summary: str, todos: list[Todo]) -> str:
    """Prompt that lets an automatically compacted session carry on by itself."""
    parts = ["Based on our conversation so far:", summary]

    remaining = _todo_lines(todos)
    if remaining:
        parts.append("\nRemaining tasks:")
        parts.extend(remaining)

    parts.append("\nPlease continue where we left off.")
    return "\n".join(parts)


def what_next_prompt(summary: str, todos: list[Todo]) -> str:
    """Prompt shown after a manual compaction."""
    parts = ["Here's a summary of our conversation so far:", summary]

    completed = [t for t in todos if t.status == "completed"]
    if completed:
        parts.append("\nCompleted:")
        parts.extend(f"- [done] {t.content}" for t in completed[-5:])

    remaining = _todo_lines(todos)
    if remaining:
        parts.append("\nRemaining tasks:")
        parts.extend(remaining)

    parts.append("\nWhat would you like to focus on next?")
    return "\n".join(parts)


class CompactionEngine:
    """Decides when to compact a session and performs the compaction."""

    def __init__(
        self,
        store: SessionStore,
        llm: BaseLLM,
        transport: RetryingTransport | None = None,
        config: CompactionConfig | None = None,
        estimator: TokenEstimator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.llm = llm
        self.transport = transport or RetryingTransport()
        self.config = config or CompactionConfig()
        self.estimator = estimator or CharTokenEstimator()
        self._clock = clock
        self._in_progress: set[str] = set()
        self._usage_cache: dict[str, tuple[float, float]] = {}

    async def calculate_usage(self, session_id: str) -> float:
        """Estimated fraction of the context window the next request would use."""
        cached = self._usage_cache.get(session_id)
        now = self._clock()
        if cached is not None and now - cached[1] < self.config.cache_ttl:
            return cached[0]

        try:
            session = await self.store.read(session_id)
        except KeyError:
            logger.warning("Usage requested for unknown session", session_id=session_id)
            return 0.0

        tokens = estimate_tokens(session.messages, self.estimator, self.config.base_overhead)
        usage = tokens / session.context_window if session.context_window else 0.0

        self._usage_cache[session_id] = (usage, now)
        return usage

    async def should_compact(self, session_id: str) -> bool:
        return await self.calculate_usage(session_id) >= self.config.trigger_threshold

    async def is_in_warning_zone(self, session_id: str) -> bool:
        usage = await self.calculate_usage(session_id)
        return self.config.warning_threshold <= usage < self.config.trigger_threshold

    def invalidate_cache(self, session_id: str) -> None:
        self._usage_cache.pop(session_id, None)

    def is_in_progress(self, session_id: str) -> bool:
        return session_id in self._in_progress

    async def _summarize(self, messages: list[LLMMessage], todos: list[Todo]) -> str | None:
        prompt = build_summary_prompt(messages, todos)
        try:
            response = await self.transport.execute(
                lambda: self.llm.generate(
                    [LLMMessage(role="user", content=prompt)],
                    system_prompt=SUMMARY_SYSTEM_PROMPT,
                    temperature=self.config.summary_temperature,
                    max_tokens=self.config.summary_max_tokens,
                )
            )
        except Exception as e:
            logger.error("Compaction summarization failed", error=str(e))
            return None

        summary = (response.content or "").strip()
        if not summary:
            logger.error("Compaction summarization returned no content")
            return None
        return summary

    async def compact(self, session_id: str, manual: bool = False) -> CompactResult:
        """Summarize everything but the most recent messages.

        Raises CompactionInProgressError if the session is already being
        compacted. A failed summary leaves the session untouched and comes
        back as a result carrying the failure notice.
        """
        if session_id in self._in_progress:
            raise CompactionInProgressError(session_id)

        self._in_progress.add(session_id)
        try:
            session = await self.store.read(session_id)
            messages = session.messages
            keep = self.config.keep_recent

            if len(messages) <= keep:
                return CompactResult(
                    compacted=False,
                    summary="",
                    removed_count=0,
                    new_message_count=len(messages),
                    continuation_prompt=NOTHING_TO_COMPACT_PROMPT if manual else None,
                )

            logger.info(
                "Starting conversation compaction",
                session_id=session_id,
                message_count=len(messages),
                manual=manual,
            )

            to_compact = messages[:-keep] if keep > 0 else list(messages)
            recent = messages[-keep:] if keep > 0 else []

            to_compact, pruned_count = prune_tool_outputs(to_compact, self.config.keep_tool_outputs)

            summary = await self._summarize(to_compact, session.todos)
            if summary is None:
                return CompactResult(
                    compacted=False,
                    summary=SUMMARY_FAILED_NOTICE,
                    removed_count=0,
                    new_message_count=len(messages),
                    pruned_count=pruned_count,
                )

            summary_message = LLMMessage(role="system", content=SUMMARY_PREFIX + summary)
            new_messages = [summary_message, *recent]
            await self.store.update(session_id, messages=new_messages)
            self.invalidate_cache(session_id)

            prompt = (
                what_next_prompt(summary, session.todos)
                if manual
                else continuation_prompt(summary, session.todos)
            )

            logger.info(
                "Compaction complete",
                session_id=session_id,
                removed=len(to_compact),
                pruned=pruned_count,
                new_message_count=len(new_messages),
            )

            return CompactResult(
                compacted=True,
                summary=summary,
                removed_count=len(to_compact),
                new_message_count=len(new_messages),
                continuation_prompt=prompt,
                pruned_count=pruned_count,
            )
        finally:
            self._in_progress.discard(session_id)

    async def maybe_compact(self, session_id: str) -> CompactResult | None:
        """Compact automatically once the trigger threshold is reached."""
        if session_id in self._in_progress:
            return None
        if not await self.should_compact(session_id):
            return None
        return await self.compact(session_id, manual=False)

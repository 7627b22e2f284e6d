"""
Session coordinator.

This is the top of the runtime. For each operator message it:
1. Appends the message to the session transcript
2. Runs one turn through the ToolOrchestrator
3. Persists the messages the turn produced
4. Compacts the session when it approaches the context window
5. Snapshots the working tree as a checkpoint for the turn
"""

from typing import Callable

import structlog

from ..llm.base import LLMMessage
from ..llm.cancellation import CancellationToken
from ..llm.stream import StreamEvent
from .checkpoint import Checkpoint
from .compaction import CompactResult
from .context import AgentContext
from .orchestrator import ToolOrchestrator, TurnProgress, TurnResult
from .prompts import build_system_prompt

logger = structlog.get_logger()

TURN_INDEX_KEY = "turn_index"
CHECKPOINT_SUMMARY_CHARS = 72


class Agent:
    """Drives conversations for any number of sessions sharing one context."""

    def __init__(
        self,
        context: AgentContext | None = None,
        system_prompt: str | None = None,
        on_event: Callable[[StreamEvent], None] | None = None,
        on_progress: Callable[[TurnProgress], None] | None = None,
        on_compact: Callable[[str, CompactResult], None] | None = None,
    ):
        self.context = context or AgentContext.create()
        settings = self.context.settings

        self.system_prompt = system_prompt or build_system_prompt(
            str(self.context.working_dir),
            self.context.registry.list_tools(),
        )
        self.on_compact = on_compact
        self.orchestrator = ToolOrchestrator(
            llm=self.context.llm,
            registry=self.context.registry,
            transport=self.context.transport,
            max_iterations=settings.max_tool_iterations,
            on_event=on_event,
            on_progress=on_progress,
            batch_interval=settings.batch_interval,
        )

    async def process_message(
        self,
        session_id: str,
        text: str,
        cancel_token: CancellationToken | None = None,
    ) -> TurnResult:
        """Run one turn for ``text`` and persist its outcome.

        AuthError and exhausted-retry errors propagate; the operator's message
        stays in the transcript.
        """
        store = self.context.store

        session = await store.read(session_id)
        messages = [*session.messages, LLMMessage(role="user", content=text)]
        turn_index = session.metadata.get(TURN_INDEX_KEY, 0) + 1
        await store.update(
            session_id,
            messages=messages,
            metadata={**session.metadata, TURN_INDEX_KEY: turn_index},
        )

        logger.info("Processing message", session_id=session_id, turn_index=turn_index)

        binding = self.context.bind_session(session_id)
        try:
            result = await self.orchestrator.run_turn(
                messages,
                system_prompt=self.system_prompt,
                cancel_token=cancel_token,
            )
        finally:
            self.context.unbind_session(binding)

        # Re-read: tools may have changed the todo list during the turn
        session = await store.read(session_id)
        await store.update(session_id, messages=[*session.messages, *result.messages])
        self.context.compaction.invalidate_cache(session_id)

        compacted = await self.context.compaction.maybe_compact(session_id)
        if compacted is not None and self.on_compact is not None:
            self.on_compact(session_id, compacted)

        if self.context.settings.enable_checkpoints and not result.aborted:
            await self.context.checkpoints.create_checkpoint(
                session_id,
                turn_index,
                summary=text.strip().splitlines()[0][:CHECKPOINT_SUMMARY_CHARS] if text.strip() else None,
            )

        return result

    async def compact(self, session_id: str) -> CompactResult:
        """Manual compaction."""
        result = await self.context.compaction.compact(session_id, manual=True)
        if self.on_compact is not None:
            self.on_compact(session_id, result)
        return result

    async def context_usage(self, session_id: str) -> float:
        return await self.context.compaction.calculate_usage(session_id)

    async def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        return await self.context.checkpoints.list_checkpoints(session_id)

    async def undo(self, session_id: str, turn_index: int) -> bool:
        return await self.context.checkpoints.undo(session_id, turn_index)

    async def redo(self, session_id: str, turn_index: int) -> bool:
        return await self.context.checkpoints.redo(session_id, turn_index)

    async def end_session(self, session_id: str) -> bool:
        """Remove the session's checkpoint branches."""
        return await self.context.checkpoints.cleanup(session_id)

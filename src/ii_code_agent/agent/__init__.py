"""
Agent module - the conversation runtime.

Includes:
- Agent: session coordinator (turn, persistence, compaction, checkpoint)
- ToolOrchestrator: streaming tool-execution loop for one turn
- CompactionEngine: context-window management
- CheckpointStore: git-backed undo/redo
- AgentContext: explicit wiring of all collaborators
"""

from .batching import UpdateCoalescer
from .checkpoint import Checkpoint, CheckpointStore
from .compaction import CharTokenEstimator, CompactionConfig, CompactionEngine, CompactResult
from .context import AgentContext
from .core import Agent
from .orchestrator import ToolOrchestrator, TurnPhase, TurnProgress, TurnResult
from .session import InMemorySessionStore, Session, SessionStore, Todo

__all__ = [
    "Agent",
    "AgentContext",
    "UpdateCoalescer",
    "Checkpoint",
    "CheckpointStore",
    "CharTokenEstimator",
    "CompactionConfig",
    "CompactionEngine",
    "CompactResult",
    "ToolOrchestrator",
    "TurnPhase",
    "TurnProgress",
    "TurnResult",
    "InMemorySessionStore",
    "Session",
    "SessionStore",
    "Todo",
]

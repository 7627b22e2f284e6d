"""
Error taxonomy for the agent runtime.

Only AuthError and the exhausted-retry errors abort a turn. Every other
subsystem failure is reported in-band (tool output, failure summaries,
boolean checkpoint results).
"""


class AgentError(Exception):
    """Base class for all runtime errors."""


class AbortedError(AgentError):
    """The operation was cancelled by the operator."""

    def __init__(self, message: str = "Request aborted"):
        super().__init__(message)


class TransportError(AgentError):
    """A failure talking to the LLM backend."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(TransportError):
    """Authentication failed. Fatal, never retried."""

    def __init__(self, message: str):
        super().__init__(message, status_code=401)


class RateLimitError(TransportError):
    """Rate limited by the server and out of attempts."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class TransientTransportError(TransportError):
    """A network or server error that is worth retrying."""


class RetryExhaustedError(TransportError):
    """A retryable error persisted through every attempt."""

    def __init__(self, message: str, attempts: int, status_code: int | None = None):
        super().__init__(message, status_code=status_code)
        self.attempts = attempts


class ToolExecutionError(AgentError):
    """A tool handler failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolValidationError(AgentError):
    """Tool arguments did not match the tool's schema."""

    def __init__(self, tool_name: str, field: str, message: str):
        super().__init__(f"Invalid parameters: {field}: {message}")
        self.tool_name = tool_name
        self.field = field


class CheckpointError(AgentError):
    """A git step of a checkpoint operation failed."""


class CompactionError(AgentError):
    """Compaction could not run."""


class CompactionInProgressError(CompactionError):
    """Another compaction is already running for the session."""

    def __init__(self, session_id: str):
        super().__init__(f"Compaction already in progress for session {session_id}")
        self.session_id = session_id

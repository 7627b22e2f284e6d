"""
Fixed-interval coalescing of UI-facing updates.

Rapid successive updates for the same key collapse into one delivery of the
latest value. The window is fixed: a new update never pushes the pending
delivery further out, so a steady stream still renders every interval.
"""

import asyncio
from typing import Any, Callable, Hashable

import structlog

logger = structlog.get_logger()

DEFAULT_INTERVAL = 0.016


class UpdateCoalescer:
    """Latest-wins update batching keyed by an arbitrary hashable."""

    def __init__(
        self,
        callback: Callable[[Hashable, Any], None],
        interval: float = DEFAULT_INTERVAL,
    ):
        self.callback = callback
        self.interval = interval
        self._pending: dict[Hashable, Any] = {}
        self._handles: dict[Hashable, asyncio.TimerHandle] = {}

    def push(self, key: Hashable, value: Any) -> None:
        """Queue ``value`` for ``key``; delivered at the end of the current window."""
        self._pending[key] = value
        if key in self._handles:
            return

        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(self.interval, self._deliver, key)

    def _deliver(self, key: Hashable) -> None:
        self._handles.pop(key, None)
        if key not in self._pending:
            return
        value = self._pending.pop(key)
        try:
            self.callback(key, value)
        except Exception as e:
            logger.error("Update callback failed", key=str(key), error=str(e))

    def flush(self, key: Hashable) -> None:
        """Deliver the pending value for ``key`` now, if any."""
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()
        if key in self._pending:
            self._deliver(key)

    def flush_all(self) -> None:
        for key in list(self._pending):
            self.flush(key)

    def cancel(self) -> None:
        """Drop everything pending without delivering."""
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        self._pending.clear()

    @property
    def pending(self) -> int:
        return len(self._pending)

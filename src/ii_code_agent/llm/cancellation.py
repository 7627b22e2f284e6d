"""
Cooperative cancellation for in-flight model calls.
"""

import asyncio
import time
from contextvars import ContextVar, Token
from typing import Callable

import structlog

from ..errors import AbortedError

logger = structlog.get_logger()

_active_token: ContextVar["CancellationToken | None"] = ContextVar("ii_cancel_token", default=None)


class CancellationToken:
    """A one-shot cancel signal shared by the transport and the chunk loop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortedError()

    async def wait(self) -> None:
        await self._event.wait()


class InterruptGate:
    """Double-press interrupt.

    The first press inside the window only arms the gate; a second press
    before the window expires cancels the token. Presses outside the window
    start over.
    """

    def __init__(
        self,
        token: CancellationToken,
        window: float = 1.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.token = token
        self.window = window
        self._clock = clock
        self._armed_at: float | None = None

    @property
    def armed(self) -> bool:
        return self._armed_at is not None and self._clock() - self._armed_at <= self.window

    def press(self) -> bool:
        """Register a press. Returns True when the token was cancelled."""
        if self.token.cancelled:
            return True

        if self.armed:
            self._armed_at = None
            self.token.cancel()
            logger.info("Interrupt confirmed, cancelling")
            return True

        self._armed_at = self._clock()
        return False

    def reset(self) -> None:
        self._armed_at = None


def current_cancel_token() -> CancellationToken | None:
    """The token of the turn the running task belongs to, if any.

    Tool handlers use it to hand the parent turn's cancel signal to work
    they start, such as nested subagent turns.
    """
    return _active_token.get()


def bind_cancel_token(token: CancellationToken) -> Token:
    return _active_token.set(token)


def unbind_cancel_token(binding: Token) -> None:
    _active_token.reset(binding)

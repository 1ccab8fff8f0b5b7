"""Cooperative cancellation tokens for in-flight and queued requests.

A :class:`CancellationToken` plays the role of an abort signal. Callers hand
one to the pipeline on a request descriptor; the pipeline links it with its
own per-attempt timeout so that either source aborts the attempt.
"""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

Listener = Callable[["CancellationToken"], None]


class CancellationToken:
    """Single-shot cancellation flag with listeners and an awaitable event.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel("user navigated away")
        >>> token.reason
        'user navigated away'
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._listeners: List[Listener] = []
        self._reason: Optional[str] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._unlinks: List[Callable[[], None]] = []

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token. Later calls are no-ops."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener(self)
        self.dispose()

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` and return a function that unregisters it.

        If the token already fired, the listener runs immediately.
        """
        if self.is_cancelled():
            listener(self)
            return lambda: None
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return remove

    async def wait(self) -> None:
        await self._event.wait()

    def cancel_after(self, delay: float, reason: str = "timeout") -> None:
        """Schedule cancellation ``delay`` seconds from now on the running loop."""
        if self._timer is not None:
            self._timer.cancel()
        if delay <= 0:
            self.cancel(reason)
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self.cancel, reason)

    def dispose(self) -> None:
        """Drop the pending timer and detach from any parent tokens."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        unlinks, self._unlinks = self._unlinks, []
        for unlink in unlinks:
            unlink()

    @classmethod
    def linked(cls, *parents: Optional["CancellationToken"]) -> "CancellationToken":
        """Create a token that fires as soon as any of ``parents`` fires."""
        child = cls()
        for parent in parents:
            if parent is None:
                continue
            remove = parent.add_listener(lambda p: child.cancel(p.reason or "cancelled"))
            child._unlinks.append(remove)
        return child

    @classmethod
    def with_timeout(cls, delay: float) -> "CancellationToken":
        token = cls()
        token.cancel_after(delay)
        return token

"""Listener registry with snapshot fan-out.

A listener is any object with ``on_raw(text)`` and ``on_geomessage(message)``
methods.  Either method may be a coroutine function; the returned awaitable is
scheduled as its own task so a slow listener cannot hold up the others.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from typing import Any, Iterable, Optional, Protocol, runtime_checkable

from geomessage_net.models import Geomessage

logger = logging.getLogger(__name__)


@runtime_checkable
class GeomessageListener(Protocol):
    """Callback contract for receivers of datagrams and Geomessages."""

    def on_raw(self, text: str) -> Any:
        """Called once per datagram with its text, which may not be XML."""

    def on_geomessage(self, message: Geomessage) -> Any:
        """Called once per record decoded from a datagram."""


class ListenerRegistry:
    """Thread-safe set of listeners.

    Delivery iterates over a snapshot taken under the lock, so callbacks may
    add or remove listeners without deadlock.  The lock is never held while a
    callback runs.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[GeomessageListener] = []
        self._tasks: set[asyncio.Task] = set()
        # Loop used for coroutine callbacks fired from other threads
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    def add(self, listener: GeomessageListener) -> bool:
        """Add *listener*; return False if it was already registered."""
        with self._lock:
            if any(existing is listener for existing in self._listeners):
                return False
            self._listeners.append(listener)
            return True

    def remove(self, listener: GeomessageListener) -> bool:
        """Remove *listener*; return False if it was not registered."""
        with self._lock:
            for i, existing in enumerate(self._listeners):
                if existing is listener:
                    del self._listeners[i]
                    return True
            return False

    def snapshot(self) -> list[GeomessageListener]:
        with self._lock:
            return list(self._listeners)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def __contains__(self, listener: object) -> bool:
        with self._lock:
            return any(existing is listener for existing in self._listeners)

    # ── delivery ────────────────────────────────────────────────────

    def dispatch_raw(self, text: str) -> None:
        """Deliver *text* to every listener's ``on_raw``."""
        for listener in self.snapshot():
            self._invoke(listener, "on_raw", text)

    def dispatch_geomessages(self, messages: Iterable[Geomessage]) -> None:
        """Deliver each message, in order, to every listener's ``on_geomessage``."""
        for message in messages:
            for listener in self.snapshot():
                self._invoke(listener, "on_geomessage", message)

    def _invoke(self, listener: GeomessageListener, method: str, arg: Any) -> None:
        callback = getattr(listener, method, None)
        if callback is None:
            return
        try:
            result = callback(arg)
        except Exception:
            logger.exception("Listener %r failed in %s", listener, method)
            return
        if inspect.isawaitable(result):
            self._schedule(result, listener, method)

    def _schedule(self, awaitable: Any, listener: GeomessageListener, method: str) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError:
            # Called from a thread with no running loop
            if self.loop is None or not inspect.iscoroutine(awaitable):
                logger.warning("No event loop to run %s of %r", method, listener)
                if inspect.iscoroutine(awaitable):
                    awaitable.close()
                return
            asyncio.run_coroutine_threadsafe(awaitable, self.loop)
            return
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "Listener %r failed in %s",
                    listener,
                    method,
                    exc_info=t.exception(),
                )

        task.add_done_callback(_done)

"""Tests for the dispatcher module."""

import asyncio
from unittest.mock import MagicMock

import pytest

from geomessage_net.dispatcher import GeomessageListener, ListenerRegistry
from geomessage_net.models import Geomessage


class _Recorder:
    """Listener that records calls in order."""

    def __init__(self, log: list, name: str = "rec") -> None:
        self.log = log
        self.name = name

    def on_raw(self, text: str) -> None:
        self.log.append((self.name, "raw", text))

    def on_geomessage(self, message: Geomessage) -> None:
        self.log.append((self.name, "geo", message.id))


def test_add_is_idempotent() -> None:
    registry = ListenerRegistry()
    listener = MagicMock()
    assert registry.add(listener) is True
    assert registry.add(listener) is False
    assert len(registry) == 1


def test_remove_absent_is_noop() -> None:
    registry = ListenerRegistry()
    assert registry.remove(MagicMock()) is False


def test_listener_protocol() -> None:
    assert isinstance(_Recorder([]), GeomessageListener)


def test_delivery_order() -> None:
    """Each message goes to every listener before the next message."""
    log: list = []
    registry = ListenerRegistry()
    registry.add(_Recorder(log, "a"))
    registry.add(_Recorder(log, "b"))

    registry.dispatch_raw("<x/>")
    registry.dispatch_geomessages([Geomessage(id="1"), Geomessage(id="2")])

    assert log == [
        ("a", "raw", "<x/>"),
        ("b", "raw", "<x/>"),
        ("a", "geo", "1"),
        ("b", "geo", "1"),
        ("a", "geo", "2"),
        ("b", "geo", "2"),
    ]


def test_failing_listener_does_not_stop_others() -> None:
    """An exception in one listener is logged; later listeners still run."""
    log: list = []
    registry = ListenerRegistry()
    broken = MagicMock()
    broken.on_geomessage.side_effect = RuntimeError("boom")
    registry.add(broken)
    registry.add(_Recorder(log))

    registry.dispatch_geomessages([Geomessage(id="1")])

    assert log == [("rec", "geo", "1")]


def test_listener_may_remove_itself() -> None:
    """Callbacks can change the registry without deadlocking."""
    registry = ListenerRegistry()

    class _OneShot:
        calls = 0

        def on_raw(self, text: str) -> None:
            self.calls += 1
            registry.remove(self)

        def on_geomessage(self, message: Geomessage) -> None:
            pass

    one_shot = _OneShot()
    registry.add(one_shot)
    registry.dispatch_raw("a")
    registry.dispatch_raw("b")
    assert one_shot.calls == 1
    assert one_shot not in registry


@pytest.mark.asyncio
async def test_coroutine_listener_scheduled() -> None:
    """Coroutine callbacks run as their own tasks."""
    received: list = []

    class _AsyncListener:
        async def on_raw(self, text: str) -> None:
            await asyncio.sleep(0)
            received.append(text)

        async def on_geomessage(self, message: Geomessage) -> None:
            received.append(message.id)

    registry = ListenerRegistry()
    registry.add(_AsyncListener())
    registry.dispatch_raw("payload")
    registry.dispatch_geomessages([Geomessage(id="A")])
    assert received == []

    for _ in range(5):
        await asyncio.sleep(0)
    assert sorted(received) == ["A", "payload"]

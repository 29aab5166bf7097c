"""NDJSON output of inbound traffic, for the ``listen`` command and debugging.

StdoutSink
    Writes raw bytes to ``sys.stdout.buffer``.

NdjsonRecorder
    A listener that serializes every datagram and decoded record to one
    NDJSON line each::

        {"event": "raw", "received_at": "...", "text": "<geomessages>..."}
        {"event": "geomessage", "received_at": "...", "id": "A", "type": "...", "fields": {...}}
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

import orjson

from geomessage_net.models import Geomessage

logger = logging.getLogger(__name__)


class StdoutSink:
    """Write NDJSON bytes directly to stdout."""

    def write(self, data: bytes) -> None:
        """Write *data* to ``sys.stdout.buffer``.

        Raises
        ------
        BrokenPipeError
            If the stdout consumer has gone away.
        """
        try:
            sys.stdout.buffer.write(data)
            sys.stdout.buffer.flush()
        except BrokenPipeError:
            logger.warning("stdout broken, consumer likely exited")
            raise


def raw_record(text: str) -> bytes:
    """Serialize one received datagram to a newline-terminated NDJSON line."""
    return orjson.dumps(
        {"event": "raw", "received_at": _now(), "text": text},
        option=orjson.OPT_APPEND_NEWLINE,
    )


def geomessage_record(message: Geomessage) -> bytes:
    """Serialize one decoded record to a newline-terminated NDJSON line."""
    return orjson.dumps(
        {
            "event": "geomessage",
            "received_at": _now(),
            "id": message.id,
            "type": message.type,
            "fields": message.fields,
        },
        option=orjson.OPT_APPEND_NEWLINE,
    )


class NdjsonRecorder:
    """Listener that writes inbound traffic to a sink.

    Parameters
    ----------
    sink:
        Destination for NDJSON lines.
    max_datagrams:
        Set :attr:`done` after this many datagrams; ``None`` for no limit.
    """

    def __init__(self, sink: StdoutSink, max_datagrams: Optional[int] = None) -> None:
        self._sink = sink
        self._max_datagrams = max_datagrams
        self.datagram_count = 0
        self.geomessage_count = 0
        self.done = asyncio.Event()

    def on_raw(self, text: str) -> None:
        if self.done.is_set():
            return
        self._write(raw_record(text))
        self.datagram_count += 1
        if self._max_datagrams is not None and self.datagram_count >= self._max_datagrams:
            # Records of this datagram are delivered before the loop runs again
            try:
                asyncio.get_running_loop().call_soon(self.done.set)
            except RuntimeError:
                self.done.set()

    def on_geomessage(self, message: Geomessage) -> None:
        if self.done.is_set():
            return
        self._write(geomessage_record(message))
        self.geomessage_count += 1

    def _write(self, data: bytes) -> None:
        try:
            self._sink.write(data)
        except BrokenPipeError:
            self.done.set()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

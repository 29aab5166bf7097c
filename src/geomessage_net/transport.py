"""UDP broadcast transport for Geomessage envelopes.

One send socket broadcasts each datagram to every IPv4 broadcast address of
the host's active interfaces.  While receiving, a bound socket on the
configured port feeds a single receive task::

    STOPPED → start_receiving() → RECEIVING → stop_receiving() → STOPPED
    RECEIVING → (socket error) → STOPPED

Each received datagram goes to listeners as raw text first, then as one
Geomessage per decoded record (subject to self-suppression).  Records sent
by this process loop back to local listeners synchronously, before
:meth:`BroadcastTransport.send` returns.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import socket
import threading
from typing import Iterable, Optional, Sequence

import psutil

from geomessage_net.codec import MAX_PAYLOAD_BYTES, Decoder, encode
from geomessage_net.dispatcher import GeomessageListener, ListenerRegistry
from geomessage_net.errors import PayloadTooLargeError, TransportError
from geomessage_net.models import Geomessage
from geomessage_net.policy import SelfSuppressionPolicy

logger = logging.getLogger(__name__)

LIMITED_BROADCAST = "255.255.255.255"


class ReceiverState(enum.Enum):
    """States of the receive side."""

    STOPPED = "STOPPED"
    RECEIVING = "RECEIVING"


def broadcast_addresses() -> list[str]:
    """Return the directed broadcast address of every active IPv4 interface.

    Falls back to the limited broadcast address ``255.255.255.255`` when no
    interface reports one.
    """
    addresses: list[str] = []
    try:
        stats = psutil.net_if_stats()
        for name, addrs in psutil.net_if_addrs().items():
            if name in stats and not stats[name].isup:
                continue
            for addr in addrs:
                if addr.family == socket.AF_INET and addr.broadcast:
                    if addr.broadcast not in addresses:
                        addresses.append(addr.broadcast)
    except (OSError, RuntimeError) as exc:
        logger.warning("Could not enumerate network interfaces: %s", exc)
    if not addresses:
        addresses.append(LIMITED_BROADCAST)
    return addresses


class BroadcastTransport:
    """Sends and receives Geomessage datagrams over UDP broadcast.

    Parameters
    ----------
    port:
        UDP port for both sending and receiving.  Usually 1024–65535.
    policy:
        Self-suppression policy; defaults to suppressing nothing but the
        default periodic types on loopback.
    destinations:
        Explicit destination addresses.  When empty the host's broadcast
        addresses are enumerated on every send.
    """

    def __init__(
        self,
        port: int,
        policy: Optional[SelfSuppressionPolicy] = None,
        destinations: Optional[Sequence[str]] = None,
    ) -> None:
        self._port = port
        self._policy = policy or SelfSuppressionPolicy()
        self._destinations = list(destinations or [])
        self._listeners = ListenerRegistry()
        self._decoder = Decoder()
        self._loopback_decoder = Decoder()

        self._send_lock = threading.Lock()
        self._send_sock: Optional[socket.socket] = None

        self._state = ReceiverState.STOPPED
        self._recv_sock: Optional[socket.socket] = None
        self._recv_task: Optional[asyncio.Task] = None

    # ── properties ──────────────────────────────────────────────────

    @property
    def port(self) -> int:
        return self._port

    @property
    def policy(self) -> SelfSuppressionPolicy:
        return self._policy

    @property
    def listeners(self) -> ListenerRegistry:
        return self._listeners

    @property
    def receiving(self) -> bool:
        return self._state is ReceiverState.RECEIVING

    @property
    def decode_error_count(self) -> int:
        """Number of received datagrams that were not well-formed XML."""
        return self._decoder.error_count

    def destinations(self) -> list[str]:
        """Addresses the next datagram will be sent to."""
        return list(self._destinations) if self._destinations else broadcast_addresses()

    # ── listeners ───────────────────────────────────────────────────

    def add_listener(self, listener: GeomessageListener) -> bool:
        return self._listeners.add(listener)

    def remove_listener(self, listener: GeomessageListener) -> bool:
        return self._listeners.remove(listener)

    # ── sending ─────────────────────────────────────────────────────

    def send(self, payload: bytes) -> None:
        """Broadcast *payload* and loop its records back to local listeners.

        Raises
        ------
        PayloadTooLargeError
            If *payload* exceeds :data:`MAX_PAYLOAD_BYTES`.
        TransportError
            If the socket rejected the datagram for every destination.
        """
        if len(payload) > MAX_PAYLOAD_BYTES:
            raise PayloadTooLargeError(len(payload), MAX_PAYLOAD_BYTES)

        destinations = self.destinations()
        failures: list[tuple[str, OSError]] = []
        with self._send_lock:
            sock = self._get_send_socket()
            for address in destinations:
                try:
                    sock.sendto(payload, (address, self._port))
                except OSError as exc:
                    failures.append((address, exc))

        if len(failures) == len(destinations):
            address, exc = failures[-1]
            raise TransportError(f"Could not send to {address}:{self._port}: {exc}") from exc
        for address, exc in failures:
            logger.warning("Send to %s:%d failed: %s", address, self._port, exc)

        self._loop_back(payload)

    def send_geomessages(self, messages: Iterable[Geomessage], external: bool = False) -> bytes:
        """Encode *messages* into one envelope, send it, and return the payload."""
        payload = encode(messages, external=external)
        self.send(payload)
        return payload

    def _loop_back(self, payload: bytes) -> None:
        messages = [
            m for m in self._loopback_decoder.decode(payload)
            if self._policy.allow_loopback(m)
        ]
        if messages:
            self._listeners.dispatch_geomessages(messages)

    def _get_send_socket(self) -> socket.socket:
        if self._send_sock is None:
            try:
                sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            except OSError as exc:
                raise TransportError(f"Could not open send socket: {exc}") from exc
            self._send_sock = sock
        return self._send_sock

    # ── receiving ───────────────────────────────────────────────────

    def start_receiving(self) -> None:
        """Bind the receive socket and start the receive task.

        Must be called from a running event loop.  Has no effect if already
        receiving.

        Raises
        ------
        TransportError
            If the port cannot be bound.
        """
        if self._recv_task is not None and not self._recv_task.done():
            return
        loop = asyncio.get_running_loop()
        self._listeners.loop = loop
        sock = self._open_receive_socket(self._port)
        self._recv_sock = sock
        self._recv_task = loop.create_task(self._receive_loop(sock))
        self._set_state(ReceiverState.RECEIVING)

    def stop_receiving(self) -> None:
        """Stop the receive task and release its socket.  Has no effect if stopped."""
        task, sock = self._recv_task, self._recv_sock
        self._recv_task = None
        self._recv_sock = None
        if task is not None and not task.done():
            # The task closes the socket as it unwinds
            task.cancel()
        elif sock is not None:
            sock.close()
        if self._state is not ReceiverState.STOPPED:
            self._set_state(ReceiverState.STOPPED)

    def set_port(self, port: int) -> None:
        """Change the port; rebinds immediately if receiving."""
        if port == self._port:
            return
        self._port = port
        if self.receiving:
            self.stop_receiving()
            self.start_receiving()

    async def close(self) -> None:
        """Stop receiving, wait for the receive task, and close the send socket."""
        task = self._recv_task
        self.stop_receiving()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        with self._send_lock:
            if self._send_sock is not None:
                self._send_sock.close()
                self._send_sock = None

    def _open_receive_socket(self, port: int) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind(("", port))
            sock.setblocking(False)
        except OSError as exc:
            sock.close()
            raise TransportError(f"Could not bind UDP port {port}: {exc}") from exc
        return sock

    async def _receive_loop(self, sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        logger.info("Receiving Geomessages on UDP port %d", sock.getsockname()[1])
        try:
            while True:
                data, addr = await loop.sock_recvfrom(sock, MAX_PAYLOAD_BYTES)
                self._handle_datagram(data, addr)
        except OSError as exc:
            if sock.fileno() == -1:
                logger.info("Receive socket closed")
            else:
                logger.error("Receive loop failed: %s", exc)
            if self._recv_sock is sock:
                self._recv_task = None
                self._recv_sock = None
                self._set_state(ReceiverState.STOPPED)
        finally:
            sock.close()

    def _handle_datagram(self, data: bytes, addr: tuple) -> None:
        try:
            text = data.decode("utf-8", errors="replace")
            self._listeners.dispatch_raw(text)
            messages = [
                m for m in self._decoder.decode(data)
                if self._policy.allow_received(m)
            ]
            self._listeners.dispatch_geomessages(messages)
        except Exception:
            logger.exception("Failed to handle datagram from %s", addr)

    # ── helpers ─────────────────────────────────────────────────────

    def _set_state(self, new: ReceiverState) -> None:
        old = self._state
        self._state = new
        logger.info("Receiver state: %s → %s (port %d)", old.value, new.value, self._port)

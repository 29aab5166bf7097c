"""Location event streams: live fixes from the host and GPX replay.

Every source follows the same small state machine::

    STOPPED → start() → STARTED → pause() → PAUSED → start() → STARTED (resumed)
    any     → stop()  → STOPPED   (next start() begins fresh)

Listeners are plain callables taking a :class:`LocationFix`.  A listener
added while a source is running receives fixes from the next emission on.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from dataclasses import replace
from datetime import timezone
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import gpxpy
import gpxpy.gpx

from geomessage_net.errors import ConfigError
from geomessage_net.models import LocationFix
from geomessage_net.util import planar_heading_degrees

logger = logging.getLogger(__name__)

LocationListener = Callable[[LocationFix], Any]

DEFAULT_GPX_PATH = Path(__file__).resolve().parent / "data" / "route_jalalabad.gpx"

# Delay used when two fixes have no usable time difference.
DEFAULT_REPLAY_DELAY_MS = 1000
MIN_REPLAY_DELAY_MS = 1


class LocationSourceState(enum.Enum):
    """States shared by every location source."""

    STOPPED = "STOPPED"
    STARTED = "STARTED"
    PAUSED = "PAUSED"


class LocationSource:
    """Base class for producers of :class:`LocationFix` events.

    Subclasses hook :meth:`_on_start`, :meth:`_on_pause` and :meth:`_on_stop`
    and call :meth:`_send_location` to emit.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[LocationListener] = []
        self._state = LocationSourceState.STOPPED

    @property
    def state(self) -> LocationSourceState:
        return self._state

    def add_listener(self, listener: LocationListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: LocationListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def listeners(self) -> list[LocationListener]:
        with self._lock:
            return list(self._listeners)

    def clear_listeners(self) -> None:
        with self._lock:
            self._listeners.clear()

    # ── lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        """Start producing, or resume if paused.  No effect if already started."""
        if self._state is LocationSourceState.STARTED:
            return
        previous = self._state
        resuming = previous is LocationSourceState.PAUSED
        self._set_state(LocationSourceState.STARTED)
        try:
            self._on_start(resuming)
        except Exception:
            self._set_state(previous)
            raise

    def pause(self) -> None:
        """Stop producing but keep the current position.  Only valid when started."""
        if self._state is not LocationSourceState.STARTED:
            return
        self._set_state(LocationSourceState.PAUSED)
        self._on_pause()

    def stop(self) -> None:
        """Stop producing; the next :meth:`start` begins from the beginning."""
        if self._state is not LocationSourceState.STOPPED:
            self._set_state(LocationSourceState.STOPPED)
        self._on_stop()

    def _on_start(self, resuming: bool) -> None:
        pass

    def _on_pause(self) -> None:
        pass

    def _on_stop(self) -> None:
        pass

    # ── delivery ────────────────────────────────────────────────────

    def _send_location(self, fix: LocationFix) -> None:
        for listener in self.listeners():
            try:
                listener(fix)
            except Exception:
                logger.exception("Location listener %r failed", listener)

    def _set_state(self, new: LocationSourceState) -> None:
        old = self._state
        self._state = new
        logger.info(
            "%s state: %s → %s", type(self).__name__, old.value, new.value
        )


class LiveLocationSource(LocationSource):
    """Relays fixes delivered by the host platform.

    Fixes pushed while the source is not started are dropped.
    """

    def __init__(self) -> None:
        super().__init__()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _on_start(self, resuming: bool) -> None:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    def push(self, fix: LocationFix) -> None:
        """Deliver *fix* to listeners on the calling thread."""
        if self._state is not LocationSourceState.STARTED:
            logger.debug("Dropped fix while %s", self._state.value)
            return
        self._send_location(fix)

    def push_threadsafe(self, fix: LocationFix) -> None:
        """Deliver *fix* on the event loop that started this source.

        Raises
        ------
        RuntimeError
            If the source was not started from a running event loop.
        """
        if self._loop is None:
            raise RuntimeError("Source was not started from an event loop")
        self._loop.call_soon_threadsafe(self.push, fix)


class ReplayLocationSource(LocationSource):
    """Replays a fixed sequence of fixes, looping forever.

    The wait between two emissions is the difference of their timestamps
    divided by :attr:`speed_multiplier`.

    Parameters
    ----------
    fixes:
        Fixes in playback order.  Must not be empty.
    speed_multiplier:
        Playback speed; values ≤ 0 are ignored.
    """

    def __init__(self, fixes: Sequence[LocationFix], speed_multiplier: float = 1.0) -> None:
        super().__init__()
        if not fixes:
            raise ValueError("A replay needs at least one location")
        self._fixes = list(fixes)
        self._index = 0
        self._speed_multiplier = 1.0
        self.speed_multiplier = speed_multiplier
        self._task: Optional[asyncio.Task] = None
        self._halt: Optional[asyncio.Event] = None

    # ── construction ────────────────────────────────────────────────

    @classmethod
    def from_gpx_text(cls, text: str, speed_multiplier: float = 1.0) -> ReplayLocationSource:
        """Build a replay from GPX document text."""
        return cls(fixes_from_gpx(gpxpy.parse(text)), speed_multiplier)

    @classmethod
    def from_gpx_file(
        cls, path: Optional[str | Path] = None, speed_multiplier: float = 1.0
    ) -> ReplayLocationSource:
        """Build a replay from a GPX file.

        Falls back to the bundled route when *path* is unset or is not a file.
        """
        gpx_path = Path(path) if path else None
        if gpx_path is None or not gpx_path.is_file():
            if gpx_path is not None:
                logger.warning("GPX file %s not found, using the bundled route", gpx_path)
            gpx_path = DEFAULT_GPX_PATH
        with open(gpx_path, encoding="utf-8") as fh:
            return cls.from_gpx_text(fh.read(), speed_multiplier)

    # ── properties ──────────────────────────────────────────────────

    @property
    def fixes(self) -> list[LocationFix]:
        return list(self._fixes)

    @property
    def speed_multiplier(self) -> float:
        return self._speed_multiplier

    @speed_multiplier.setter
    def speed_multiplier(self, value: float) -> None:
        if value > 0:
            self._speed_multiplier = float(value)
        else:
            logger.warning("Ignoring non-positive speed multiplier %s", value)

    def next_delay(self, index: int) -> float:
        """Seconds to wait after emitting fix *index* before emitting the next one."""
        current = self._fixes[index]
        following = self._fixes[(index + 1) % len(self._fixes)]
        if len(self._fixes) < 2 or current.timestamp is None or following.timestamp is None:
            return DEFAULT_REPLAY_DELAY_MS / 1000.0
        delta_ms = (following.timestamp - current.timestamp).total_seconds() * 1000.0
        if delta_ms <= 0:
            return DEFAULT_REPLAY_DELAY_MS / 1000.0
        return max(MIN_REPLAY_DELAY_MS, round(delta_ms / self._speed_multiplier)) / 1000.0

    # ── lifecycle hooks ─────────────────────────────────────────────

    def _on_start(self, resuming: bool) -> None:
        loop = asyncio.get_running_loop()
        if not resuming:
            self._index = 0
        self._halt_task()
        self._halt = asyncio.Event()
        self._task = loop.create_task(self._run(self._halt))

    def _on_pause(self) -> None:
        self._halt_task()

    def _on_stop(self) -> None:
        self._halt_task()
        self._index = 0

    def _halt_task(self) -> None:
        if self._halt is not None:
            self._halt.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._halt = None
        self._task = None

    async def _run(self, halt: asyncio.Event) -> None:
        while not halt.is_set():
            index = self._index
            self._send_location(self._fixes[index])
            self._index = (index + 1) % len(self._fixes)
            try:
                await asyncio.wait_for(halt.wait(), timeout=self.next_delay(index))
            except asyncio.TimeoutError:
                continue


def fixes_from_gpx(gpx: gpxpy.gpx.GPX) -> list[LocationFix]:
    """Flatten a parsed GPX document into fixes ordered by time.

    Track points are used when present, then route points, then waypoints.
    Headings missing from the document are derived from the previous point.
    """
    points: list = [
        point
        for track in gpx.tracks
        for segment in track.segments
        for point in segment.points
    ]
    if not points:
        points = [point for route in gpx.routes for point in route.points]
    if not points:
        points = list(gpx.waypoints)

    if points and all(p.time is not None for p in points):
        points.sort(key=lambda p: p.time)

    fixes: list[LocationFix] = []
    previous: Optional[LocationFix] = None
    for point in points:
        timestamp = point.time
        if timestamp is not None and timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        fix = LocationFix(
            longitude=point.longitude,
            latitude=point.latitude,
            timestamp=timestamp,
            speed=getattr(point, "speed", None) or 0.0,
        )
        course = getattr(point, "course", None)
        if course is not None:
            fix = replace(fix, heading=float(course) % 360.0)
        elif previous is not None:
            if (previous.longitude, previous.latitude) == (fix.longitude, fix.latitude):
                heading = previous.heading
            else:
                heading = planar_heading_degrees(
                    previous.longitude, previous.latitude, fix.longitude, fix.latitude
                )
            fix = replace(fix, heading=heading)
        fixes.append(fix)
        previous = fix
    return fixes


# ── controller ──────────────────────────────────────────────────────


class LocationMode(enum.Enum):
    """Where fixes come from."""

    SIMULATOR = "simulator"
    SERVICE = "service"


class LocationController:
    """Owns the active location source and keeps listeners across source swaps.

    Parameters
    ----------
    mode:
        ``simulator`` replays a GPX track; ``service`` relays pushed fixes.
    gpx_file:
        Track for simulator mode; the bundled route when unset.
    speed_multiplier:
        Replay speed for simulator mode.
    """

    def __init__(
        self,
        mode: LocationMode | str = LocationMode.SIMULATOR,
        gpx_file: Optional[str | Path] = None,
        speed_multiplier: float = 1.0,
    ) -> None:
        self._gpx_file = gpx_file
        self._speed_multiplier = speed_multiplier
        self._listeners: list[LocationListener] = []
        self._mode = _to_mode(mode)
        self._source = self._create_source()

    @property
    def mode(self) -> LocationMode:
        return self._mode

    @property
    def source(self) -> LocationSource:
        return self._source

    @property
    def state(self) -> LocationSourceState:
        return self._source.state

    def set_mode(self, mode: LocationMode | str, gpx_file: Optional[str | Path] = None) -> None:
        """Swap the source.  A running source is stopped and the new one started."""
        was_started = self._source.state is LocationSourceState.STARTED
        self._source.stop()
        self._source.clear_listeners()
        self._mode = _to_mode(mode)
        if gpx_file is not None:
            self._gpx_file = gpx_file
        self._source = self._create_source()
        if was_started:
            self._source.start()

    def add_listener(self, listener: LocationListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)
        self._source.add_listener(listener)

    def remove_listener(self, listener: LocationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)
        self._source.remove_listener(listener)

    def start(self) -> None:
        self._source.start()

    def pause(self) -> None:
        self._source.pause()

    def unpause(self) -> None:
        if self._source.state is LocationSourceState.PAUSED:
            self._source.start()

    def stop(self) -> None:
        self._source.stop()

    def push(self, fix: LocationFix) -> None:
        """Deliver a fix from the host platform (service mode only)."""
        if not isinstance(self._source, LiveLocationSource):
            logger.debug("Ignored pushed fix in %s mode", self._mode.value)
            return
        self._source.push(fix)

    def _create_source(self) -> LocationSource:
        source: LocationSource
        if self._mode is LocationMode.SIMULATOR:
            source = ReplayLocationSource.from_gpx_file(self._gpx_file, self._speed_multiplier)
        else:
            source = LiveLocationSource()
        for listener in self._listeners:
            source.add_listener(listener)
        return source


def _to_mode(mode: LocationMode | str) -> LocationMode:
    if isinstance(mode, LocationMode):
        return mode
    try:
        return LocationMode(str(mode).lower())
    except ValueError:
        raise ConfigError(f"Unknown location mode: {mode!r}") from None

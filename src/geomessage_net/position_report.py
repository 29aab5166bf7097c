"""Periodic position reports built from the latest location fix.

The reporter listens to one location stream and keeps the last fix.  While
enabled, a timer task builds a ``position_report`` record from that fix and
broadcasts it every ``period_ms``.  Ticks with no fix yet are skipped; the
first fix after enabling restarts the timer so the first report goes out at
once.

All setters must be called from the event loop thread.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from datetime import datetime
from typing import Any, Optional

from geomessage_net.errors import ConfigError
from geomessage_net.models import (
    ACTION_FIELD_NAME,
    ACTION_UPDATE,
    CONTROL_POINTS_FIELD_NAME,
    SIC_FIELD_NAME,
    TYPE_FIELD_NAME,
    WKID_FIELD_NAME,
    Geomessage,
    LocationFix,
)
from geomessage_net.transport import BroadcastTransport
from geomessage_net.util import format_geomessage_date

logger = logging.getLogger(__name__)

POSITION_REPORT_TYPE = "position_report"
DEFAULT_PERIOD_MS = 1000
WGS84_WKID = 4326


def build_position_report(
    fix: LocationFix,
    unique_id: str,
    callsign: str,
    vehicle_type: str,
    symbol_code: str,
    emergency: bool = False,
    now: Optional[datetime] = None,
) -> Geomessage:
    """Build the ``position_report`` record for *fix*."""
    submitted = format_geomessage_date(now)
    valid = format_geomessage_date(fix.timestamp) if fix.timestamp else submitted
    return Geomessage(
        id=unique_id,
        fields={
            TYPE_FIELD_NAME: POSITION_REPORT_TYPE,
            SIC_FIELD_NAME: symbol_code,
            "type": vehicle_type,
            WKID_FIELD_NAME: str(WGS84_WKID),
            CONTROL_POINTS_FIELD_NAME: f"{fix.longitude},{fix.latitude}",
            ACTION_FIELD_NAME: ACTION_UPDATE,
            "uniquedesignation": callsign,
            "datetimesubmitted": submitted,
            "datetimevalid": valid,
            "direction": str(math.floor(fix.heading + 0.5)),
            "status911": "1" if emergency else "0",
        },
    )


class PositionReporter:
    """Broadcasts this client's position on a fixed period.

    Parameters
    ----------
    transport:
        Transport used to send each report.
    callsign, vehicle_type, unique_id, symbol_code:
        Identity carried in every report.  ``callsign`` and ``unique_id``
        must be set before enabling.
    period_ms:
        Report period; values ≤ 0 mean the default (1000 ms).
    emergency:
        Sets ``status911`` in outgoing reports.
    """

    def __init__(
        self,
        transport: BroadcastTransport,
        callsign: str = "",
        vehicle_type: str = "",
        unique_id: str = "",
        symbol_code: str = "",
        period_ms: int = DEFAULT_PERIOD_MS,
        emergency: bool = False,
    ) -> None:
        self._transport = transport
        self.callsign = callsign
        self.vehicle_type = vehicle_type
        self.unique_id = unique_id
        self.symbol_code = symbol_code

        self._period_ms = DEFAULT_PERIOD_MS if period_ms <= 0 else period_ms
        self._emergency = emergency
        self._enabled = False
        self._awaiting_fix = False

        self._fix_lock = threading.Lock()
        self._last_fix: Optional[LocationFix] = None
        self._timer: Optional[asyncio.Task] = None
        self._source: Any = None
        self.reports_sent = 0

    # ── location input ──────────────────────────────────────────────

    def attach(self, source: Any) -> None:
        """Listen to *source*, detaching from any previous stream."""
        self.detach()
        source.add_listener(self.on_location)
        self._source = source

    def detach(self) -> None:
        if self._source is not None:
            self._source.remove_listener(self.on_location)
            self._source = None

    def on_location(self, fix: LocationFix) -> None:
        with self._fix_lock:
            self._last_fix = fix
        if self._enabled and self._awaiting_fix:
            self._awaiting_fix = False
            self._restart_timer()

    @property
    def last_fix(self) -> Optional[LocationFix]:
        with self._fix_lock:
            return self._last_fix

    # ── settings ────────────────────────────────────────────────────

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, enabled: bool) -> None:
        enabled = bool(enabled)
        if enabled == self._enabled:
            return
        if enabled:
            if not self.callsign or not self.unique_id:
                raise ConfigError("Position reports need a callsign and a unique id")
            self._enabled = True
            self._awaiting_fix = self.last_fix is None
            logger.info(
                "Position reports enabled for %s every %d ms",
                self.callsign,
                self._period_ms,
            )
            self._restart_timer()
        else:
            self._enabled = False
            self._awaiting_fix = False
            self._cancel_timer()
            logger.info("Position reports disabled")

    @property
    def period_ms(self) -> int:
        return self._period_ms

    @period_ms.setter
    def period_ms(self, period_ms: int) -> None:
        period_ms = DEFAULT_PERIOD_MS if period_ms <= 0 else int(period_ms)
        if period_ms == self._period_ms:
            return
        self._period_ms = period_ms
        if self._enabled:
            self._restart_timer()

    @property
    def emergency(self) -> bool:
        return self._emergency

    @emergency.setter
    def emergency(self, emergency: bool) -> None:
        emergency = bool(emergency)
        if emergency == self._emergency:
            return
        self._emergency = emergency
        if self._enabled:
            self._restart_timer()

    def close(self) -> None:
        """Disable reporting and stop listening for fixes."""
        self.enabled = False
        self.detach()

    # ── timer ───────────────────────────────────────────────────────

    def _restart_timer(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.create_task(self._run_timer(self._period_ms / 1000.0))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _run_timer(self, period: float) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            self._tick()
            next_tick += period
            delay = next_tick - loop.time()
            if delay < 0:
                # Fell behind; skip the missed ticks
                next_tick = loop.time()
                delay = 0
            await asyncio.sleep(delay)

    def _tick(self) -> None:
        fix = self.last_fix
        if not self._enabled or fix is None:
            return
        try:
            report = build_position_report(
                fix,
                unique_id=self.unique_id,
                callsign=self.callsign,
                vehicle_type=self.vehicle_type,
                symbol_code=self.symbol_code,
                emergency=self._emergency,
            )
            self._transport.send_geomessages([report])
            self.reports_sent += 1
        except Exception:
            logger.exception("Couldn't send position report")

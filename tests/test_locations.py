"""Tests for the location sources and controller."""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from geomessage_net.errors import ConfigError
from geomessage_net.locations import (
    LiveLocationSource,
    LocationController,
    LocationMode,
    LocationSourceState,
    ReplayLocationSource,
)
from geomessage_net.models import LocationFix

T0 = datetime(2013, 5, 14, 8, 0, 0, tzinfo=timezone.utc)

GPX_TEXT = """<?xml version="1.0" encoding="UTF-8"?>
<gpx version="1.1" creator="test" xmlns="http://www.topografix.com/GPX/1/1">
  <trk><trkseg>
    <trkpt lat="1.0" lon="1.0"><time>2013-05-14T08:00:04Z</time></trkpt>
    <trkpt lat="0.0" lon="0.0"><time>2013-05-14T08:00:00Z</time></trkpt>
    <trkpt lat="1.0" lon="0.0"><time>2013-05-14T08:00:02Z</time></trkpt>
  </trkseg></trk>
</gpx>
"""


def _fixes(count: int, step_ms: int = 10) -> list[LocationFix]:
    return [
        LocationFix(
            longitude=70.0 + i * 0.001,
            latitude=34.0,
            timestamp=T0 + timedelta(milliseconds=i * step_ms),
        )
        for i in range(count)
    ]


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class TestReplayDelays:
    """Tests for :meth:`ReplayLocationSource.next_delay`."""

    def test_delta_divided_by_multiplier(self) -> None:
        source = ReplayLocationSource(_fixes(3, step_ms=2000), speed_multiplier=4)
        assert source.next_delay(0) == pytest.approx(0.5)

    def test_clamped_to_one_millisecond(self) -> None:
        source = ReplayLocationSource(_fixes(2, step_ms=1), speed_multiplier=100)
        assert source.next_delay(0) == pytest.approx(0.001)

    def test_wrap_around_uses_default(self) -> None:
        """Last → first has a negative delta, which means one second."""
        source = ReplayLocationSource(_fixes(3))
        assert source.next_delay(2) == pytest.approx(1.0)

    def test_missing_timestamp_uses_default(self) -> None:
        fixes = [LocationFix(70.0, 34.0), LocationFix(70.1, 34.0, timestamp=T0)]
        assert ReplayLocationSource(fixes).next_delay(0) == pytest.approx(1.0)

    def test_single_fix_uses_default(self) -> None:
        assert ReplayLocationSource(_fixes(1)).next_delay(0) == pytest.approx(1.0)

    def test_non_positive_multiplier_ignored(self) -> None:
        source = ReplayLocationSource(_fixes(2), speed_multiplier=2.0)
        source.speed_multiplier = 0
        source.speed_multiplier = -3
        assert source.speed_multiplier == 2.0

    def test_empty_replay_rejected(self) -> None:
        with pytest.raises(ValueError):
            ReplayLocationSource([])


class TestGpx:
    """GPX loading with gpxpy."""

    def test_sorted_by_time_with_derived_heading(self) -> None:
        source = ReplayLocationSource.from_gpx_text(GPX_TEXT)
        fixes = source.fixes
        assert [(f.longitude, f.latitude) for f in fixes] == [(0.0, 0.0), (0.0, 1.0), (1.0, 1.0)]
        assert fixes[0].heading == 0.0
        assert fixes[1].heading == pytest.approx(0.0, abs=1e-9)
        assert fixes[2].heading == pytest.approx(90.0)
        assert fixes[0].timestamp == T0

    def test_bundled_route(self) -> None:
        source = ReplayLocationSource.from_gpx_file()
        assert len(source.fixes) == 12
        assert source.fixes[0].longitude == pytest.approx(70.4498)

    def test_missing_file_falls_back_to_bundled_route(self, tmp_path) -> None:
        source = ReplayLocationSource.from_gpx_file(tmp_path / "missing.gpx")
        assert len(source.fixes) == 12

    def test_gpx_file(self, tmp_path) -> None:
        path = tmp_path / "route.gpx"
        path.write_text(GPX_TEXT, encoding="utf-8")
        assert len(ReplayLocationSource.from_gpx_file(path).fixes) == 3


class TestReplayPlayback:
    """Replay emission and state transitions."""

    @pytest.mark.asyncio
    async def test_loops_back_to_first_fix(self) -> None:
        """After N emissions the replay emits point 0 again."""
        fixes = _fixes(3)
        source = ReplayLocationSource(fixes)
        received: list[LocationFix] = []
        source.add_listener(received.append)
        source.start()
        try:
            await _wait_for(lambda: len(received) >= 4)
        finally:
            source.stop()
        assert received[:4] == [fixes[0], fixes[1], fixes[2], fixes[0]]

    @pytest.mark.asyncio
    async def test_pause_and_resume(self) -> None:
        fixes = _fixes(5, step_ms=20)
        source = ReplayLocationSource(fixes)
        received: list[LocationFix] = []
        source.add_listener(received.append)

        source.start()
        await _wait_for(lambda: len(received) >= 2)
        source.pause()
        assert source.state is LocationSourceState.PAUSED
        count = len(received)
        await asyncio.sleep(0.1)
        assert len(received) == count

        source.start()
        await _wait_for(lambda: len(received) > count)
        source.stop()
        assert received[count] == fixes[count]

    @pytest.mark.asyncio
    async def test_stop_restarts_from_beginning(self) -> None:
        fixes = _fixes(5, step_ms=20)
        source = ReplayLocationSource(fixes)
        received: list[LocationFix] = []
        source.add_listener(received.append)

        source.start()
        await _wait_for(lambda: len(received) >= 2)
        source.stop()
        assert source.state is LocationSourceState.STOPPED
        received.clear()

        source.start()
        await _wait_for(lambda: len(received) >= 1)
        source.stop()
        assert received[0] == fixes[0]

    def test_pause_when_stopped_is_noop(self) -> None:
        source = ReplayLocationSource(_fixes(2))
        source.pause()
        assert source.state is LocationSourceState.STOPPED

    def test_failed_start_keeps_previous_state(self) -> None:
        """Starting without an event loop raises and leaves the source startable."""
        source = ReplayLocationSource(_fixes(2))
        with pytest.raises(RuntimeError):
            source.start()
        assert source.state is LocationSourceState.STOPPED

        async def _start_in_loop() -> LocationSourceState:
            source.start()
            state = source.state
            source.stop()
            return state

        assert asyncio.run(_start_in_loop()) is LocationSourceState.STARTED

    @pytest.mark.asyncio
    async def test_start_when_started_is_noop(self) -> None:
        source = ReplayLocationSource(_fixes(3, step_ms=500))
        received: list[LocationFix] = []
        source.add_listener(received.append)
        source.start()
        source.start()
        await asyncio.sleep(0.05)
        source.stop()
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_replay(self) -> None:
        source = ReplayLocationSource(_fixes(3))
        received: list[LocationFix] = []

        def _broken(fix: LocationFix) -> None:
            raise RuntimeError("boom")

        source.add_listener(_broken)
        source.add_listener(received.append)
        source.start()
        await _wait_for(lambda: len(received) >= 2)
        source.stop()


class TestLiveSource:
    """Tests for :class:`LiveLocationSource`."""

    def test_push_dropped_unless_started(self) -> None:
        source = LiveLocationSource()
        received: list[LocationFix] = []
        source.add_listener(received.append)
        source.push(LocationFix(70.0, 34.0))
        assert received == []

    @pytest.mark.asyncio
    async def test_push_threadsafe(self) -> None:
        source = LiveLocationSource()
        received: list[LocationFix] = []
        source.add_listener(received.append)
        source.start()
        fix = LocationFix(70.4, 34.4, timestamp=T0)

        thread = threading.Thread(target=source.push_threadsafe, args=(fix,))
        thread.start()
        thread.join()
        await _wait_for(lambda: received == [fix])

    def test_push_threadsafe_without_loop(self) -> None:
        source = LiveLocationSource()
        source.start()
        with pytest.raises(RuntimeError):
            source.push_threadsafe(LocationFix(70.0, 34.0))


class TestLocationController:
    """Tests for :class:`LocationController`."""

    def test_service_mode_relays_pushed_fixes(self) -> None:
        controller = LocationController(mode="service")
        received: list[LocationFix] = []
        controller.add_listener(received.append)
        controller.start()
        fix = LocationFix(70.4, 34.4)
        controller.push(fix)
        assert received == [fix]
        controller.pause()
        controller.push(LocationFix(0.0, 0.0))
        controller.unpause()
        assert controller.state is LocationSourceState.STARTED
        assert received == [fix]

    @pytest.mark.asyncio
    async def test_mode_swap_keeps_listeners(self) -> None:
        controller = LocationController(mode=LocationMode.SERVICE)
        received: list[LocationFix] = []
        controller.add_listener(received.append)
        controller.start()

        controller.set_mode("simulator")
        assert isinstance(controller.source, ReplayLocationSource)
        assert controller.state is LocationSourceState.STARTED
        await _wait_for(lambda: len(received) >= 1)
        controller.stop()

    def test_unknown_mode(self) -> None:
        with pytest.raises(ConfigError):
            LocationController(mode="satellite")

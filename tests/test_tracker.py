"""Tests for the driver GPS sampler's publish throttling."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from ridecells.workers.tracker import DriverLocationTracker, LocationSource

BASE = (4.7410, -74.0721)
# ~5 m and ~2 m of latitude.
FIVE_METRES = 0.000045
TWO_METRES = 0.000018


class ScriptedSource(LocationSource):
    def __init__(self, *positions):
        self.positions = list(positions)

    async def current_position(self):
        if len(self.positions) > 1:
            return self.positions.pop(0)
        return self.positions[0]


class FailingSource(LocationSource):
    async def current_position(self):
        raise RuntimeError("no fix")


class GatedSource(LocationSource):
    def __init__(self):
        self.gate = asyncio.Event()

    async def current_position(self):
        await self.gate.wait()
        return BASE


def _tracker(source, publish=None, **kwargs) -> DriverLocationTracker:
    kwargs.setdefault("sampling_interval_seconds", 60)
    return DriverLocationTracker(source, publish or AsyncMock(), **kwargs)


class TestShouldPublish:
    def test_empty_buffer_always_publishes(self):
        tracker = _tracker(ScriptedSource(BASE))
        assert tracker.should_publish(*BASE) is True

    @pytest.mark.asyncio
    async def test_identical_points_do_not_publish(self):
        tracker = _tracker(ScriptedSource(BASE))
        tracker.start_tracking("cell", "req")
        await asyncio.sleep(0)
        for _ in range(2):
            await tracker.sample_location()

        assert tracker.buffer == [BASE, BASE, BASE]
        assert tracker.should_publish(*BASE) is False
        assert tracker.should_publish(BASE[0] + TWO_METRES, BASE[1]) is False
        assert tracker.should_publish(BASE[0] + FIVE_METRES, BASE[1]) is True
        tracker.stop_tracking()


class TestSampling:
    @pytest.mark.asyncio
    async def test_first_fix_then_only_movement(self):
        publish = AsyncMock()
        moved = (BASE[0] + FIVE_METRES * 2, BASE[1])
        source = ScriptedSource(BASE, BASE, (BASE[0] + TWO_METRES, BASE[1]), moved)
        tracker = _tracker(source, publish)
        tracker.start_tracking("cell-A", "req-1")
        await asyncio.sleep(0)

        results = [await tracker.sample_location() for _ in range(3)]
        tracker.stop_tracking()

        # Immediate tick published BASE; then jitter twice, then real movement.
        assert results == [False, False, True]
        assert publish.await_count == 2
        publish.assert_awaited_with("cell-A", "req-1", *moved)

    @pytest.mark.asyncio
    async def test_buffer_keeps_last_three(self):
        points = [(BASE[0] + i * 0.001, BASE[1]) for i in range(5)]
        tracker = _tracker(ScriptedSource(*points))
        tracker.start_tracking("cell", "req")
        await asyncio.sleep(0)
        for _ in range(4):
            await tracker.sample_location()
        assert tracker.buffer == points[2:]
        tracker.stop_tracking()

    @pytest.mark.asyncio
    async def test_source_failure_skips_tick(self):
        publish = AsyncMock()
        tracker = _tracker(FailingSource(), publish)
        tracker.start_tracking("cell", "req")
        await asyncio.sleep(0)
        assert await tracker.sample_location() is False
        publish.assert_not_awaited()
        assert tracker.is_tracking
        tracker.stop_tracking()

    @pytest.mark.asyncio
    async def test_no_publish_when_stopped_during_fix(self):
        publish = AsyncMock()
        source = GatedSource()
        tracker = _tracker(source, publish)
        tracker.start_tracking("cell", "req")
        await asyncio.sleep(0)

        pending = asyncio.ensure_future(tracker.sample_location())
        await asyncio.sleep(0)
        tracker.stop_tracking()
        source.gate.set()

        assert await pending is False
        publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_tracking_never_samples(self):
        publish = AsyncMock()
        tracker = _tracker(ScriptedSource(BASE), publish)
        assert await tracker.sample_location() is False
        publish.assert_not_awaited()


class TestTrackingLifecycle:
    @pytest.mark.asyncio
    async def test_timer_publishes_and_stop_clears(self):
        publish = AsyncMock()
        tracker = _tracker(
            ScriptedSource(BASE, (BASE[0] + 0.001, BASE[1])),
            publish,
            sampling_interval_seconds=0.01,
        )
        tracker.start_tracking("cell-A", "req-1")
        await asyncio.sleep(0.05)
        assert tracker.is_tracking
        assert tracker.active_request == ("cell-A", "req-1")

        tracker.stop_tracking()
        assert tracker.is_tracking is False
        assert tracker.active_request is None
        assert tracker.buffer == []
        assert publish.await_count >= 2
        assert publish.await_args_list[0].args == ("cell-A", "req-1", *BASE)

    @pytest.mark.asyncio
    async def test_restart_resets_buffer(self):
        publish = AsyncMock()
        tracker = _tracker(ScriptedSource(BASE), publish)
        tracker.start_tracking("cell-A", "req-1")
        await asyncio.sleep(0)
        assert tracker.buffer == [BASE]

        tracker.start_tracking("cell-B", "req-2")
        assert tracker.buffer == []
        await asyncio.sleep(0)
        # Empty buffer again, so the same point is published for the new ride.
        publish.assert_awaited_with("cell-B", "req-2", *BASE)
        tracker.stop_tracking()

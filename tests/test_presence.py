"""Tests for the presence heartbeat and the 9-cell driver watchers."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from ridecells.domain import geocell
from ridecells.domain.entities import PresenceRecord, format_ts, utcnow
from ridecells.domain.enums import PresenceRole
from ridecells.infrastructure.documents import Query
from ridecells.infrastructure.memory_store import InMemoryDocumentStore
from ridecells.services.presence import PresenceService, presence_path
from tests.conftest import NOW, settle

CELL = 30 / 3600.0
HERE = (0.5041, 0.5041)
NORTH = (HERE[0] + CELL, HERE[1])
EAST = (HERE[0], HERE[1] + CELL)
FAR = (10.0, 10.0)


def _cell(point) -> str:
    return geocell.compute_cell_id_from_coords(*point)


async def _driver(store, uid, point, minutes_ago: float = 0.0, role=PresenceRole.DRIVER):
    service = PresenceService(store, uid, role)
    return await service.update_presence(
        *point, now=utcnow() - timedelta(minutes=minutes_ago)
    )


class BrokenDeleteStore(InMemoryDocumentStore):
    async def delete(self, path):
        raise RuntimeError("delete refused")


class BrokenSetStore(InMemoryDocumentStore):
    async def set(self, path, data):
        raise RuntimeError("write refused")


# ── Writes ────────────────────────────────────────────────────────────


class TestUpdatePresence:
    @pytest.mark.asyncio
    async def test_writes_record_in_current_cell(self, store):
        service = PresenceService(store, "driver-1", PresenceRole.DRIVER)
        record = await service.update_presence(*HERE, active_ride_id="ride-9", now=NOW)

        doc = await store.get(presence_path(_cell(HERE), "driver-1"))
        assert doc.data["role"] == "driver"
        assert doc.data["lastSeen"] == format_ts(NOW)
        assert doc.data["expiresAt"] == format_ts(NOW + timedelta(hours=24))
        assert doc.data["activeRideId"] == "ride-9"
        assert doc.data["platform"] == "python"
        assert record.cell_id == service.current_cell_id == _cell(HERE)

    @pytest.mark.asyncio
    async def test_cell_change_deletes_old_record(self, store):
        service = PresenceService(store, "driver-1", PresenceRole.DRIVER)
        await service.update_presence(*HERE)
        await service.update_presence(*FAR)

        assert await store.get(presence_path(_cell(HERE), "driver-1")) is None
        assert await store.get(presence_path(_cell(FAR), "driver-1")) is not None
        assert service.current_cell_id == _cell(FAR)

    @pytest.mark.asyncio
    async def test_same_cell_keeps_single_record(self, store):
        service = PresenceService(store, "driver-1", PresenceRole.DRIVER)
        await service.update_presence(*HERE)
        await service.update_presence(HERE[0] + 0.0001, HERE[1])
        records = await store.query(Query(collection=f"cells/{_cell(HERE)}/presence"))
        assert [d.id for d in records] == ["driver-1"]

    @pytest.mark.asyncio
    async def test_failed_delete_tolerated(self):
        store = BrokenDeleteStore()
        service = PresenceService(store, "driver-1", PresenceRole.DRIVER)
        await service.update_presence(*HERE)
        record = await service.update_presence(*FAR)

        assert record is not None
        # Double presence until the old record goes stale.
        assert await store.get(presence_path(_cell(HERE), "driver-1")) is not None
        assert await store.get(presence_path(_cell(FAR), "driver-1")) is not None

    @pytest.mark.asyncio
    async def test_failed_write_returns_none(self):
        service = PresenceService(BrokenSetStore(), "driver-1", PresenceRole.DRIVER)
        assert await service.update_presence(*HERE) is None
        assert service.current_cell_id is None

    @pytest.mark.asyncio
    async def test_go_offline_deletes_current_record(self, store):
        service = PresenceService(store, "driver-1", PresenceRole.DRIVER)
        await service.update_presence(*HERE)
        await service.go_offline()

        assert await store.get(presence_path(_cell(HERE), "driver-1")) is None
        assert service.current_cell_id is None
        assert service.is_online is False


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_reads_fresh_location_each_tick(self, store):
        position = {"now": HERE}
        service = PresenceService(
            store, "driver-1", PresenceRole.DRIVER, heartbeat_interval_seconds=0.01
        )
        service.start_heartbeat(lambda: position["now"], lambda: "ride-1")
        await asyncio.sleep(0.03)
        assert service.is_online
        assert service.current_cell_id == _cell(HERE)

        position["now"] = FAR
        await asyncio.sleep(0.03)
        service.stop_heartbeat()

        assert service.is_online is False
        assert service.current_cell_id == _cell(FAR)
        assert await store.get(presence_path(_cell(HERE), "driver-1")) is None
        doc = await store.get(presence_path(_cell(FAR), "driver-1"))
        assert doc.data["activeRideId"] == "ride-1"

    @pytest.mark.asyncio
    async def test_async_location_source(self, store):
        async def locate():
            return HERE

        service = PresenceService(
            store, "driver-1", PresenceRole.DRIVER, heartbeat_interval_seconds=0.01
        )
        service.start_heartbeat(locate)
        await asyncio.sleep(0.02)
        service.stop_heartbeat()
        assert await store.get(presence_path(_cell(HERE), "driver-1")) is not None

    @pytest.mark.asyncio
    async def test_restart_keeps_single_loop(self, store):
        calls = []

        def locate():
            calls.append(1)
            return HERE

        service = PresenceService(
            store, "driver-1", PresenceRole.DRIVER, heartbeat_interval_seconds=10
        )
        service.start_heartbeat(locate)
        service.start_heartbeat(locate)
        await asyncio.sleep(0.02)
        # Only the second loop ran its immediate tick.
        assert len(calls) == 1
        service.close()
        assert service.is_online is False


# ── Watchers ──────────────────────────────────────────────────────────


class TestDriverCountWatcher:
    @pytest.mark.asyncio
    async def test_counts_fresh_drivers_across_nine_cells(self, store):
        await _driver(store, "d-here", HERE)
        await _driver(store, "d-north", NORTH, minutes_ago=3)
        await _driver(store, "d-stale", EAST, minutes_ago=5)
        await _driver(store, "rider", HERE, role=PresenceRole.CLIENT)
        await _driver(store, "d-far", FAR)

        counts = []
        service = PresenceService(store, "rider", PresenceRole.CLIENT)
        watcher = service.watch_driver_count(*HERE, counts.append)
        await settle()
        assert counts[-1] == 2
        assert watcher.current_count == 2

        await _driver(store, "d-east", EAST)
        await settle()
        assert counts[-1] == 3
        watcher.close()

    @pytest.mark.asyncio
    async def test_no_resubscribe_within_same_cell(self, store):
        service = PresenceService(store, "rider", PresenceRole.CLIENT)
        watcher = service.watch_driver_count(*HERE, lambda _: None)
        cells = watcher.cell_ids
        assert len(cells) == 9

        assert watcher.update_location(HERE[0] + 0.0001, HERE[1] + 0.0001) is False
        assert watcher.cell_ids == cells
        assert store.listener_count == 9

        assert watcher.update_location(*FAR) is True
        assert watcher.cell_ids != cells
        assert store.listener_count == 9
        watcher.close()
        assert store.listener_count == 0

    @pytest.mark.asyncio
    async def test_refresh_drops_drivers_gone_stale(self, store):
        await _driver(store, "d-here", HERE)
        counts = []
        service = PresenceService(store, "rider", PresenceRole.CLIENT)
        watcher = service.watch_driver_count(*HERE, counts.append)
        await settle()
        assert counts[-1] == 1

        watcher.stale_after = timedelta(0)
        watcher.refresh()
        assert counts[-1] == 0
        watcher.close()

    @pytest.mark.asyncio
    async def test_cell_error_does_not_stop_siblings(self, store):
        errors = []
        counts = []
        service = PresenceService(store, "rider", PresenceRole.CLIENT)
        watcher = service.watch_driver_count(
            *HERE, counts.append, on_error=lambda cell, exc: errors.append((cell, exc))
        )
        await settle()

        boom = RuntimeError("permission denied")
        store.emit_error(f"cells/{_cell(NORTH)}/presence", boom)
        await settle()
        assert errors == [(_cell(NORTH), boom)]

        await _driver(store, "d-east", EAST)
        await settle()
        assert counts[-1] == 1
        watcher.close()

    @pytest.mark.asyncio
    async def test_closed_watcher_is_silent(self, store):
        counts = []
        service = PresenceService(store, "rider", PresenceRole.CLIENT)
        watcher = service.watch_driver_count(*HERE, counts.append)
        watcher.close()
        await _driver(store, "d-here", HERE)
        await settle()
        assert counts == []


class TestNearbyDrivers:
    @pytest.mark.asyncio
    async def test_emits_fresh_records(self, store):
        await _driver(store, "d-here", HERE)
        await _driver(store, "d-stale", NORTH, minutes_ago=10)

        emitted = []
        service = PresenceService(store, "rider", PresenceRole.CLIENT)
        watcher = service.watch_nearby_drivers(*HERE, emitted.append)
        await settle()
        watcher.close()

        assert [r.uid for r in emitted[-1]] == ["d-here"]
        assert isinstance(emitted[-1][0], PresenceRecord)

    @pytest.mark.asyncio
    async def test_list_nearby_drivers(self, store):
        await _driver(store, "d-here", HERE)
        await _driver(store, "d-north", NORTH)
        await _driver(store, "d-stale", NORTH, minutes_ago=10)
        await _driver(store, "d-far", FAR)

        service = PresenceService(store, "rider", PresenceRole.CLIENT)
        drivers = await service.list_nearby_drivers(*HERE)
        assert sorted(r.uid for r in drivers) == ["d-here", "d-north"]

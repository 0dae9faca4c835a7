"""
Presence: heartbeat publisher and multi-cell driver watchers.

Lifecycle per actor
-------------------
  offline --start_heartbeat--> online (tick every 3 min) --go_offline--> offline

Every tick writes ``cells/{cellId}/presence/{uid}`` for the cell containing the
freshly read position.  When the actor crosses into another cell the old
record is deleted first and the new one written second.  The two writes are
not atomic: for a moment the actor may appear in both cells, and a failed
delete leaves the old record until it goes stale (4 min) or its TTL expires.
Readers tolerate this; nothing here tries to hide it.

Readers never trust a server-side time filter.  Each snapshot is re-judged
against ``now - stale_after`` on arrival (and on ``refresh``), so a driver
that silently stopped heart-beating drops out without any write.
"""

from __future__ import annotations

import inspect
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from ridecells.config import settings
from ridecells.domain import geocell
from ridecells.domain.entities import PresenceRecord, utcnow
from ridecells.domain.enums import PresenceRole
from ridecells.infrastructure.documents import DocumentStore, Query
from ridecells.services.watchers import CellErrorCallback, CellFanout
from ridecells.workers.periodic import PeriodicTask

logger = logging.getLogger(__name__)


def presence_path(cell_id: str, uid: str) -> str:
    return f"cells/{cell_id}/presence/{uid}"


def drivers_in_cell_query(cell_id: str) -> Query:
    # Deliberately no lastSeen filter: freshness is judged client-side.
    return Query(collection=f"cells/{cell_id}/presence").where(
        "role", "==", PresenceRole.DRIVER.value
    )


async def _resolve(source: Callable[[], Any]) -> Any:
    value = source()
    if inspect.isawaitable(value):
        value = await value
    return value


# ── Watchers ──────────────────────────────────────────────────────────


class _DriverPresenceWatcher:
    """9-cell driver presence watcher; subclasses pick the aggregate."""

    def __init__(
        self,
        store: DocumentStore,
        lat: float,
        lng: float,
        on_change: Callable[[Any], None],
        on_error: Optional[CellErrorCallback] = None,
        stale_after: timedelta = timedelta(seconds=settings.presence_stale_seconds),
        step_seconds: int = settings.cell_step_seconds,
    ):
        self._on_change = on_change
        self.stale_after = stale_after
        self.step_seconds = step_seconds
        self._fanout = CellFanout(
            store, drivers_in_cell_query, self._emit, on_error=on_error
        )
        self.update_location(lat, lng)

    @property
    def cell_ids(self) -> tuple[str, ...]:
        return self._fanout.cell_ids

    def update_location(self, lat: float, lng: float) -> bool:
        """Follow the watcher's own position; re-subscribes only on a cell change."""
        changed = self._fanout.watch(
            geocell.compute_all_cell_ids(lat, lng, self.step_seconds)
        )
        if changed:
            logger.info(
                "Watching drivers around %s",
                geocell.compute_canonical(lat, lng, self.step_seconds),
            )
        return changed

    def fresh_drivers(self, now: Optional[datetime] = None) -> list[PresenceRecord]:
        now = now or utcnow()
        drivers: list[PresenceRecord] = []
        for cell_id, documents in self._fanout.snapshots():
            fresh = [
                record
                for record in (
                    PresenceRecord.from_document(d.data, d.id) for d in documents
                )
                if record.is_fresh(now, self.stale_after)
            ]
            if fresh:
                logger.debug("Cell %s: %d fresh driver(s)", cell_id, len(fresh))
            drivers.extend(fresh)
        return drivers

    def refresh(self) -> None:
        """Re-judge staleness of cached snapshots without any new read."""
        if not self._fanout.closed:
            self._emit()

    def close(self) -> None:
        self._fanout.close()

    def _emit(self) -> None:
        self._on_change(self._aggregate(self.fresh_drivers()))

    def _aggregate(self, drivers: list[PresenceRecord]) -> Any:
        raise NotImplementedError


class DriverCountWatcher(_DriverPresenceWatcher):
    """Emits the number of fresh drivers across the 9 cells."""

    @property
    def current_count(self) -> int:
        return len(self.fresh_drivers())

    def _aggregate(self, drivers: list[PresenceRecord]) -> int:
        return len(drivers)


class NearbyDriversWatcher(_DriverPresenceWatcher):
    """Emits the flattened list of fresh driver records across the 9 cells."""

    def _aggregate(self, drivers: list[PresenceRecord]) -> list[PresenceRecord]:
        return drivers


# ── Service ───────────────────────────────────────────────────────────


class PresenceService:
    def __init__(
        self,
        store: DocumentStore,
        uid: str,
        role: PresenceRole,
        *,
        app_name: str = settings.app_name,
        platform: str = settings.platform,
        heartbeat_interval_seconds: float = settings.presence_heartbeat_interval_seconds,
        stale_after: timedelta = timedelta(seconds=settings.presence_stale_seconds),
        ttl: timedelta = timedelta(seconds=settings.presence_ttl_seconds),
        step_seconds: int = settings.cell_step_seconds,
        current_cell_id: Optional[str] = None,
    ):
        self.store = store
        self.uid = uid
        self.role = role
        self.app_name = app_name
        self.platform = platform
        self.stale_after = stale_after
        self.ttl = ttl
        self.step_seconds = step_seconds
        self._current_cell_id = current_cell_id
        self._heartbeat = PeriodicTask(
            "presence heartbeat", heartbeat_interval_seconds, self._tick
        )
        self._location_source: Optional[Callable[[], Any]] = None
        self._active_ride_id_source: Optional[Callable[[], Optional[str]]] = None

    @property
    def current_cell_id(self) -> Optional[str]:
        return self._current_cell_id

    @property
    def is_online(self) -> bool:
        return self._heartbeat.running

    # ── Writes ────────────────────────────────────────────────────────

    async def update_presence(
        self,
        lat: float,
        lng: float,
        active_ride_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[PresenceRecord]:
        """
        Publish one heartbeat.  Returns the written record, or None when the
        write failed (logged; the next tick supersedes it).
        """
        now = now or utcnow()
        cell_id = geocell.compute_cell_id_from_coords(lat, lng, self.step_seconds)

        previous = self._current_cell_id
        if previous is not None and previous != cell_id:
            logger.info("Presence moving cell %s -> %s", previous, cell_id)
            await self._delete_presence(previous)

        record = PresenceRecord(
            uid=self.uid,
            role=self.role,
            lat=lat,
            lng=lng,
            cell_id=cell_id,
            last_seen=now,
            expires_at=now + self.ttl,
            updated_at=now,
            platform=self.platform,
            app=self.app_name,
            active_ride_id=active_ride_id,
        )
        try:
            await self.store.set(presence_path(cell_id, self.uid), record.to_document())
        except Exception as exc:
            logger.warning("Presence write failed for %s: %s", self.uid, exc)
            return None

        self._current_cell_id = cell_id
        logger.debug(
            "Presence updated in %s", geocell.compute_canonical(lat, lng, self.step_seconds)
        )
        return record

    async def _delete_presence(self, cell_id: str) -> None:
        try:
            await self.store.delete(presence_path(cell_id, self.uid))
        except Exception as exc:
            logger.warning("Failed to delete presence in %s: %s", cell_id, exc)

    # ── Heartbeat ─────────────────────────────────────────────────────

    def start_heartbeat(
        self,
        location_source: Callable[[], Any],
        active_ride_id_source: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        """
        Publish now and every heartbeat interval.  *location_source* returns
        ``(lat, lng)`` (or an awaitable of it) and is read on every tick.
        """
        self._location_source = location_source
        self._active_ride_id_source = active_ride_id_source
        self._heartbeat.start()
        logger.info(
            "Heartbeat started for %s (interval=%ss)",
            self.uid,
            self._heartbeat.interval_seconds,
        )

    def stop_heartbeat(self) -> None:
        if self._heartbeat.running:
            logger.info("Heartbeat stopped for %s", self.uid)
        self._heartbeat.stop()

    async def go_offline(self) -> None:
        self.stop_heartbeat()
        if self._current_cell_id is not None:
            await self._delete_presence(self._current_cell_id)
            self._current_cell_id = None
        logger.info("%s went offline", self.uid)

    async def _tick(self) -> None:
        if self._location_source is None:
            return
        lat, lng = await _resolve(self._location_source)
        active_ride_id = (
            await _resolve(self._active_ride_id_source)
            if self._active_ride_id_source is not None
            else None
        )
        await self.update_presence(lat, lng, active_ride_id)

    # ── Reads ─────────────────────────────────────────────────────────

    async def list_nearby_drivers(
        self, lat: float, lng: float, now: Optional[datetime] = None
    ) -> list[PresenceRecord]:
        """One-shot read of the fresh drivers a 9-cell watcher would emit."""
        now = now or utcnow()
        drivers: list[PresenceRecord] = []
        for cell_id in geocell.compute_all_cell_ids(lat, lng, self.step_seconds):
            for document in await self.store.query(drivers_in_cell_query(cell_id)):
                record = PresenceRecord.from_document(document.data, document.id)
                if record.is_fresh(now, self.stale_after):
                    drivers.append(record)
        return drivers

    def watch_driver_count(
        self,
        lat: float,
        lng: float,
        on_count: Callable[[int], None],
        on_error: Optional[CellErrorCallback] = None,
    ) -> DriverCountWatcher:
        return DriverCountWatcher(
            self.store,
            lat,
            lng,
            on_count,
            on_error=on_error,
            stale_after=self.stale_after,
            step_seconds=self.step_seconds,
        )

    def watch_nearby_drivers(
        self,
        lat: float,
        lng: float,
        on_drivers: Callable[[list[PresenceRecord]], None],
        on_error: Optional[CellErrorCallback] = None,
    ) -> NearbyDriversWatcher:
        return NearbyDriversWatcher(
            self.store,
            lat,
            lng,
            on_drivers,
            on_error=on_error,
            stale_after=self.stale_after,
            step_seconds=self.step_seconds,
        )

    def close(self) -> None:
        self.stop_heartbeat()

"""
Ride requests: lifecycle and cell-scoped discovery
==================================================

Storage
-------
``cells/{cellId}/requests/{requestId}`` where ``cellId`` is the cell of the
**pickup** point at creation time.  A request is never re-sharded, however far
the matched driver travels, and is never deleted here: terminal requests stay
until the store's TTL (``expiresAt``) collects them.

Lifecycle
---------
  open -> assigned -> completed
  open -> cancelled            (creator only)
  assigned -> cancelled        (creator or assigned driver)

There is no reservation: two drivers accepting the same open request race and
the last write wins.  The loser sees ``assigned`` to someone else on its next
snapshot.

Discovery
---------
Drivers watch ``status == open`` requests, newest first, in their own cell or
in the 9-cell neighbourhood.  ``watch_open_requests_with_expansion`` starts
with the single cell and widens to 9 cells after ``expand_delay`` unless the
caller widened it already, so the common case costs one listener instead of
nine.  An open request whose rider stopped heart-beating (3 min) is *stale*
and is filtered out of every feed without being touched.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ridecells.config import settings
from ridecells.domain import geocell
from ridecells.domain.entities import (
    InvalidStateTransition,
    LocationPoint,
    RideRequest,
    format_ts,
    utcnow,
)
from ridecells.domain.enums import ACTIVE_STATUSES, RequestStatus
from ridecells.infrastructure.documents import (
    Document,
    DocumentStore,
    Query,
    Subscription,
)
from ridecells.services.history import HistoryService
from ridecells.services.profiles import ProfileLookup, StoreProfileLookup
from ridecells.services.watchers import CellErrorCallback, CellFanout
from ridecells.workers.periodic import PeriodicTask

logger = logging.getLogger(__name__)

RequestsCallback = Callable[[list[RideRequest]], None]


def request_path(cell_id: str, request_id: str) -> str:
    return f"cells/{cell_id}/requests/{request_id}"


def open_requests_in_cell_query(cell_id: str) -> Query:
    return (
        Query(collection=f"cells/{cell_id}/requests")
        .where("status", "==", RequestStatus.OPEN.value)
        .ordered("createdAt", descending=True)
    )


def merge_requests(
    per_cell: list[list[Document]],
    now: Optional[datetime] = None,
    stale_after: timedelta = timedelta(seconds=settings.request_stale_seconds),
) -> list[RideRequest]:
    """
    Union of every cell's latest snapshot: keyed by ``requestId`` (last
    occurrence wins), stale requests dropped, newest ``createdAt`` first.
    """
    now = now or utcnow()
    merged: dict[str, RideRequest] = {}
    for documents in per_cell:
        for document in documents:
            request = RideRequest.from_document(document.data, document.id)
            merged[request.request_id] = request
    fresh = [r for r in merged.values() if r.is_fresh(now, stale_after)]
    fresh.sort(key=lambda r: r.created_at, reverse=True)
    return fresh


# ── Watchers ──────────────────────────────────────────────────────────


class OpenRequestsWatcher:
    """Open requests across a fixed set of cells (1 or 9)."""

    def __init__(
        self,
        store: DocumentStore,
        cell_ids: list[str],
        on_requests: RequestsCallback,
        on_error: Optional[CellErrorCallback] = None,
        stale_after: timedelta = timedelta(seconds=settings.request_stale_seconds),
    ):
        self._on_requests = on_requests
        self.stale_after = stale_after
        self._fanout = CellFanout(
            store, open_requests_in_cell_query, self._emit, on_error=on_error
        )
        self._fanout.watch(cell_ids)

    @property
    def cell_ids(self) -> tuple[str, ...]:
        return self._fanout.cell_ids

    @property
    def closed(self) -> bool:
        return self._fanout.closed

    def current(self, now: Optional[datetime] = None) -> list[RideRequest]:
        return merge_requests(
            [documents for _, documents in self._fanout.snapshots()],
            now,
            self.stale_after,
        )

    def refresh(self) -> None:
        """Re-apply the staleness cut to cached snapshots."""
        if not self.closed:
            self._emit()

    def close(self) -> None:
        self._fanout.close()

    def _emit(self) -> None:
        self._on_requests(self.current())


class ExpandingRequestsWatcher:
    """
    Single-cell feed that widens to the 9-cell neighbourhood once
    ``expand_delay_seconds`` elapse, or earlier through ``expand()``.
    """

    def __init__(
        self,
        store: DocumentStore,
        lat: float,
        lng: float,
        on_requests: RequestsCallback,
        expand_delay_seconds: float = settings.expand_delay_seconds,
        on_error: Optional[CellErrorCallback] = None,
        stale_after: timedelta = timedelta(seconds=settings.request_stale_seconds),
        step_seconds: int = settings.cell_step_seconds,
    ):
        self._store = store
        self._lat = lat
        self._lng = lng
        self._on_requests = on_requests
        self._on_error = on_error
        self._stale_after = stale_after
        self._step_seconds = step_seconds
        self._expanded = False
        self._closed = False

        self._watcher = self._open(
            [geocell.compute_cell_id_from_coords(lat, lng, step_seconds)]
        )
        self._timer: Optional[asyncio.TimerHandle] = (
            asyncio.get_running_loop().call_later(expand_delay_seconds, self._on_timer)
        )

    @property
    def expanded(self) -> bool:
        return self._expanded

    @property
    def cell_ids(self) -> tuple[str, ...]:
        return self._watcher.cell_ids

    def expand(self) -> None:
        """Swap the narrow subscription for the 9-cell one (no-op if done)."""
        if self._closed or self._expanded:
            return
        self._cancel_timer()
        self._expanded = True
        narrow = self._watcher
        self._watcher = self._open(
            geocell.compute_all_cell_ids(self._lat, self._lng, self._step_seconds)
        )
        narrow.close()
        logger.info("Expanded request search to %d cells", len(self._watcher.cell_ids))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_timer()
        self._watcher.close()

    def _open(self, cell_ids: list[str]) -> OpenRequestsWatcher:
        watcher: Optional[OpenRequestsWatcher] = None

        def forward(requests: list[RideRequest]) -> None:
            # Only the live watcher may publish; a replaced one stays silent.
            if not self._closed and watcher is self._watcher:
                self._on_requests(requests)

        watcher = OpenRequestsWatcher(
            self._store,
            cell_ids,
            forward,
            on_error=self._on_error,
            stale_after=self._stale_after,
        )
        return watcher

    def _on_timer(self) -> None:
        self._timer = None
        self.expand()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


# ── Service ───────────────────────────────────────────────────────────


class RequestService:
    def __init__(
        self,
        store: DocumentStore,
        uid: str,
        *,
        profiles: Optional[ProfileLookup] = None,
        history: Optional[HistoryService] = None,
        ttl: timedelta = timedelta(seconds=settings.request_ttl_seconds),
        stale_after: timedelta = timedelta(seconds=settings.request_stale_seconds),
        heartbeat_interval_seconds: float = settings.request_heartbeat_interval_seconds,
        expand_delay_seconds: float = settings.expand_delay_seconds,
        step_seconds: int = settings.cell_step_seconds,
        default_client_name: str = settings.default_client_name,
        default_driver_name: str = settings.default_driver_name,
    ):
        self.store = store
        self.uid = uid
        self.profiles = profiles or StoreProfileLookup(store)
        self.history = history or HistoryService(store)
        self.ttl = ttl
        self.stale_after = stale_after
        self.expand_delay_seconds = expand_delay_seconds
        self.step_seconds = step_seconds
        self.default_client_name = default_client_name
        self.default_driver_name = default_driver_name
        self._heartbeat_target: Optional[tuple[str, str]] = None
        self._heartbeat = PeriodicTask(
            "request heartbeat", heartbeat_interval_seconds, self._heartbeat_tick
        )

    # ── Create / read ─────────────────────────────────────────────────

    async def create_request(
        self,
        pickup: LocationPoint,
        dropoff: Optional[LocationPoint] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RideRequest]:
        now = now or utcnow()
        client_name = await self.profiles.resolve(self.uid, self.default_client_name)
        cell_id = geocell.compute_cell_id_from_coords(
            pickup.lat, pickup.lng, self.step_seconds
        )
        request = RideRequest(
            request_id=self.store.new_id(),
            created_by_uid=self.uid,
            pickup=pickup,
            dropoff=dropoff,
            status=RequestStatus.OPEN,
            created_at=now,
            updated_at=now,
            cell_id=cell_id,
            expires_at=now + self.ttl,
            last_heartbeat=now,
            client_name=client_name,
        )
        try:
            await self.store.set(
                request_path(cell_id, request.request_id), request.to_document()
            )
        except Exception as exc:
            logger.warning("Failed to create request: %s", exc)
            return None

        await self.history.record_created(request)
        logger.info(
            "Request %s created in cell %s by %s",
            request.request_id,
            cell_id,
            client_name,
        )
        return request

    async def get_request(
        self, cell_id: str, request_id: str
    ) -> Optional[RideRequest]:
        document = await self.store.get(request_path(cell_id, request_id))
        if document is None:
            return None
        return RideRequest.from_document(document.data, document.id)

    def is_fresh(self, request: RideRequest, now: Optional[datetime] = None) -> bool:
        return request.is_fresh(now, self.stale_after)

    # ── Rider heartbeat ───────────────────────────────────────────────

    @property
    def is_heartbeating(self) -> bool:
        return self._heartbeat.running

    async def update_heartbeat(
        self, cell_id: str, request_id: str, now: Optional[datetime] = None
    ) -> None:
        """Refresh ``lastHeartbeat`` only."""
        now = now or utcnow()
        try:
            await self.store.update(
                request_path(cell_id, request_id), {"lastHeartbeat": format_ts(now)}
            )
        except Exception as exc:
            logger.warning("Failed to update heartbeat for %s: %s", request_id, exc)

    def start_request_heartbeat(self, cell_id: str, request_id: str) -> None:
        self._heartbeat_target = (cell_id, request_id)
        self._heartbeat.start()
        logger.info("Request heartbeat started for %s", request_id)

    def stop_request_heartbeat(self) -> None:
        self._heartbeat.stop()
        self._heartbeat_target = None

    async def _heartbeat_tick(self) -> None:
        if self._heartbeat_target is None:
            return
        cell_id, request_id = self._heartbeat_target
        await self.update_heartbeat(cell_id, request_id)

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def _transition(
        self,
        cell_id: str,
        request_id: str,
        new_status: RequestStatus,
        extra: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RideRequest]:
        """Read, validate, write.  Returns None instead of raising."""
        now = now or utcnow()
        request = await self.get_request(cell_id, request_id)
        if request is None:
            logger.warning("Request %s not found in cell %s", request_id, cell_id)
            return None

        try:
            request.transition_to(new_status)
        except InvalidStateTransition as exc:
            logger.warning("Request %s: %s", request_id, exc)
            return None

        fields = {"status": new_status.value, "updatedAt": format_ts(now)}
        fields.update(extra or {})
        try:
            await self.store.update(request_path(cell_id, request_id), fields)
        except Exception as exc:
            logger.warning("Failed to move %s to %s: %s", request_id, new_status.value, exc)
            return None

        request.updated_at = now
        return request

    async def assign_driver(
        self,
        cell_id: str,
        request_id: str,
        driver_uid: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RideRequest]:
        driver_uid = driver_uid or self.uid
        driver_name = await self.profiles.resolve(driver_uid, self.default_driver_name)
        request = await self._transition(
            cell_id,
            request_id,
            RequestStatus.ASSIGNED,
            {"assignedDriverUid": driver_uid, "driverName": driver_name},
            now,
        )
        if request is None:
            return None

        request.assigned_driver_uid = driver_uid
        request.driver_name = driver_name
        await self.history.record_assigned(request, now)
        logger.info("Driver %s assigned to request %s", driver_name, request_id)
        return request

    async def complete_request(
        self, cell_id: str, request_id: str, now: Optional[datetime] = None
    ) -> Optional[RideRequest]:
        request = await self._transition(
            cell_id, request_id, RequestStatus.COMPLETED, now=now
        )
        if request is not None:
            await self.history.record_finished(request, now)
            logger.info("Request %s completed", request_id)
        return request

    async def cancel_request(
        self, cell_id: str, request_id: str, now: Optional[datetime] = None
    ) -> Optional[RideRequest]:
        current = await self.get_request(cell_id, request_id)
        if current is not None and not self.may_cancel(current):
            logger.warning("%s may not cancel request %s", self.uid, request_id)
            return None

        request = await self._transition(
            cell_id, request_id, RequestStatus.CANCELLED, now=now
        )
        if request is not None:
            await self.history.record_finished(request, now)
            if self._heartbeat_target == (cell_id, request_id):
                self.stop_request_heartbeat()
            logger.info("Request %s cancelled", request_id)
        return request

    def may_cancel(self, request: RideRequest) -> bool:
        if request.status == RequestStatus.OPEN:
            return request.created_by_uid == self.uid
        return self.uid in (request.created_by_uid, request.assigned_driver_uid)

    async def update_driver_location(
        self,
        cell_id: str,
        request_id: str,
        lat: float,
        lng: float,
        now: Optional[datetime] = None,
    ) -> None:
        """Overwrite the driver's live position on the request (assigned only)."""
        now = now or utcnow()
        try:
            await self.store.update(
                request_path(cell_id, request_id),
                {
                    "driverLat": lat,
                    "driverLng": lng,
                    "driverLocationUpdatedAt": format_ts(now),
                },
            )
        except Exception as exc:
            logger.warning("Failed to publish driver location for %s: %s", request_id, exc)

    # ── Discovery ─────────────────────────────────────────────────────

    def _cells_for(self, lat: float, lng: float, include_neighbors: bool) -> list[str]:
        if include_neighbors:
            return geocell.compute_all_cell_ids(lat, lng, self.step_seconds)
        return [geocell.compute_cell_id_from_coords(lat, lng, self.step_seconds)]

    def watch_request(
        self,
        cell_id: str,
        request_id: str,
        on_request: Callable[[Optional[RideRequest]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        def handle(document: Optional[Document]) -> None:
            on_request(
                RideRequest.from_document(document.data, document.id)
                if document is not None
                else None
            )

        return self.store.watch_document(
            request_path(cell_id, request_id), handle, on_error
        )

    def watch_open_requests(
        self,
        lat: float,
        lng: float,
        on_requests: RequestsCallback,
        include_neighbors: bool = False,
        on_error: Optional[CellErrorCallback] = None,
    ) -> OpenRequestsWatcher:
        return OpenRequestsWatcher(
            self.store,
            self._cells_for(lat, lng, include_neighbors),
            on_requests,
            on_error=on_error,
            stale_after=self.stale_after,
        )

    def watch_open_requests_with_expansion(
        self,
        lat: float,
        lng: float,
        on_requests: RequestsCallback,
        expand_delay_seconds: Optional[float] = None,
        on_error: Optional[CellErrorCallback] = None,
    ) -> ExpandingRequestsWatcher:
        return ExpandingRequestsWatcher(
            self.store,
            lat,
            lng,
            on_requests,
            expand_delay_seconds=(
                self.expand_delay_seconds
                if expand_delay_seconds is None
                else expand_delay_seconds
            ),
            on_error=on_error,
            stale_after=self.stale_after,
            step_seconds=self.step_seconds,
        )

    async def list_open_requests(
        self,
        lat: float,
        lng: float,
        include_neighbors: bool = False,
        now: Optional[datetime] = None,
    ) -> list[RideRequest]:
        """One-shot read of what ``watch_open_requests`` would emit."""
        per_cell = [
            await self.store.query(open_requests_in_cell_query(cell_id))
            for cell_id in self._cells_for(lat, lng, include_neighbors)
        ]
        return merge_requests(per_cell, now, self.stale_after)

    def watch_my_requests(
        self,
        on_requests: RequestsCallback,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        """
        Requests created by this user that are still open or assigned.

        Not geo-scoped: a collection-group query over every cell's
        ``requests``, accepted for simplicity.
        """
        query = (
            Query(collection_group="requests")
            .where("createdByUid", "==", self.uid)
            .where("status", "in", [s.value for s in ACTIVE_STATUSES])
        )
        return self.store.watch_query(
            query,
            lambda documents: on_requests(
                [RideRequest.from_document(d.data, d.id) for d in documents]
            ),
            on_error,
        )

    def close(self) -> None:
        self.stop_request_heartbeat()

"""
Ride history mirror: ``users/{uid}/history/{rideId}``.

The history feature itself lives outside the core; the request lifecycle only
keeps each participant's entry in step with the request.  Every write here is
best effort: a failure is logged and never blocks or fails the request
mutation that triggered it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from ridecells.domain.entities import (
    HistoryEntry,
    RideRequest,
    format_ts,
    utcnow,
)
from ridecells.domain.enums import PresenceRole
from ridecells.infrastructure.documents import DocumentStore, Query, Subscription

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50


def history_path(uid: str, ride_id: str) -> str:
    return f"users/{uid}/history/{ride_id}"


class HistoryService:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def _save(self, uid: str, entry: HistoryEntry) -> None:
        try:
            await self.store.set(history_path(uid, entry.ride_id), entry.to_document())
            logger.debug("Saved history entry for %s, ride %s", uid, entry.ride_id)
        except Exception as exc:
            logger.warning("History write failed for %s/%s: %s", uid, entry.ride_id, exc)

    async def _update(self, uid: str, ride_id: str, fields: dict[str, Any]) -> None:
        try:
            await self.store.update(history_path(uid, ride_id), fields)
        except Exception as exc:
            logger.warning("History update failed for %s/%s: %s", uid, ride_id, exc)

    async def record_created(self, request: RideRequest) -> None:
        await self._save(
            request.created_by_uid,
            HistoryEntry(
                ride_id=request.request_id,
                role=PresenceRole.CLIENT,
                pickup=request.pickup,
                dropoff=request.dropoff,
                client_uid=request.created_by_uid,
                client_name=request.client_name or "Cliente",
                created_at=request.created_at,
                status="pending",
            ),
        )

    async def record_assigned(
        self, request: RideRequest, now: Optional[datetime] = None
    ) -> None:
        """Open the driver's entry and move the rider's entry to assigned."""
        now = now or utcnow()
        if request.assigned_driver_uid is None:
            return
        await self._save(
            request.assigned_driver_uid,
            HistoryEntry(
                ride_id=request.request_id,
                role=PresenceRole.DRIVER,
                pickup=request.pickup,
                dropoff=request.dropoff,
                client_uid=request.created_by_uid,
                client_name=request.client_name or "Cliente",
                driver_uid=request.assigned_driver_uid,
                driver_name=request.driver_name,
                created_at=now,
                assigned_at=now,
                status="assigned",
            ),
        )
        await self._update(
            request.created_by_uid,
            request.request_id,
            {
                "status": "assigned",
                "assignedAt": format_ts(now),
                "driverUid": request.assigned_driver_uid,
                "driverName": request.driver_name,
            },
        )

    async def record_finished(
        self, request: RideRequest, now: Optional[datetime] = None
    ) -> None:
        """Mark both parties' entries completed / cancelled."""
        now = now or utcnow()
        status = request.status.value
        stamp_field = "completedAt" if status == "completed" else "cancelledAt"
        fields = {"status": status, stamp_field: format_ts(now)}

        await self._update(request.created_by_uid, request.request_id, fields)
        if request.assigned_driver_uid is not None:
            await self._update(request.assigned_driver_uid, request.request_id, fields)

    async def get_history(self, uid: str) -> list[HistoryEntry]:
        documents = await self.store.query(self._history_query(uid))
        return [
            HistoryEntry.from_document(d.data, d.id) for d in documents[:HISTORY_LIMIT]
        ]

    def watch_history(
        self,
        uid: str,
        on_entries: Callable[[list[HistoryEntry]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        return self.store.watch_query(
            self._history_query(uid),
            lambda documents: on_entries(
                [
                    HistoryEntry.from_document(d.data, d.id)
                    for d in documents[:HISTORY_LIMIT]
                ]
            ),
            on_error,
        )

    @staticmethod
    def _history_query(uid: str) -> Query:
        return Query(collection=f"users/{uid}/history").ordered(
            "createdAt", descending=True
        )

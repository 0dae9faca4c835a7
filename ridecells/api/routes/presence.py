"""
Presence endpoints
==================

PUT    /api/v1/presence            -- publish one heartbeat for the caller
DELETE /api/v1/presence/{cell_id}?role -- remove the caller's record from a cell
GET    /api/v1/presence/drivers?lat&lng -- fresh drivers in the 9-cell area
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ridecells.api.dependencies import get_current_uid, get_store
from ridecells.api.middleware import DEFAULT_RATE, limiter
from ridecells.api.schemas import PresenceResponse, PresenceUpdate
from ridecells.domain.enums import PresenceRole
from ridecells.infrastructure.documents import DocumentStore
from ridecells.services.presence import PresenceService

router = APIRouter(prefix="/presence", tags=["presence"])


@router.put(
    "",
    response_model=PresenceResponse,
    summary="Publish a presence heartbeat",
)
@limiter.limit(DEFAULT_RATE)
async def update_presence(
    request: Request,
    body: PresenceUpdate,
    store: DocumentStore = Depends(get_store),
    uid: str = Depends(get_current_uid),
):
    service = PresenceService(
        store, uid, body.role, current_cell_id=body.previous_cell_id
    )
    record = await service.update_presence(body.lat, body.lng, body.active_ride_id)
    if record is None:
        raise HTTPException(status_code=503, detail="Presence could not be stored")
    return PresenceResponse.from_entity(record)


@router.delete(
    "/{cell_id}",
    status_code=204,
    summary="Go offline from a cell",
)
@limiter.limit(DEFAULT_RATE)
async def go_offline(
    request: Request,
    cell_id: str,
    role: PresenceRole = Query(PresenceRole.DRIVER),
    store: DocumentStore = Depends(get_store),
    uid: str = Depends(get_current_uid),
):
    service = PresenceService(store, uid, role, current_cell_id=cell_id)
    await service.go_offline()


@router.get(
    "/drivers",
    response_model=list[PresenceResponse],
    summary="Fresh drivers in the 9-cell neighbourhood of a point",
)
@limiter.limit(DEFAULT_RATE)
async def nearby_drivers(
    request: Request,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    store: DocumentStore = Depends(get_store),
    uid: str = Depends(get_current_uid),
):
    service = PresenceService(store, uid, PresenceRole.CLIENT)
    records = await service.list_nearby_drivers(lat, lng)
    return [PresenceResponse.from_entity(r) for r in records]

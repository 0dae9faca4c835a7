"""
Ride request endpoints
======================

POST /api/v1/requests                                   -- create (202 Accepted)
GET  /api/v1/requests/open?lat&lng&include_neighbors    -- fresh open requests
GET  /api/v1/requests/{cell_id}/{request_id}            -- read one request
POST /api/v1/requests/{cell_id}/{request_id}/heartbeat  -- rider keep-alive
POST /api/v1/requests/{cell_id}/{request_id}/assign     -- caller takes the ride
POST /api/v1/requests/{cell_id}/{request_id}/complete
POST /api/v1/requests/{cell_id}/{request_id}/cancel
POST /api/v1/requests/{cell_id}/{request_id}/driver-location

The acting user is the ``X-User-Id`` header.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ridecells.api.dependencies import get_current_uid, get_store
from ridecells.api.middleware import DEFAULT_RATE, limiter
from ridecells.api.schemas import (
    DriverLocationUpdate,
    RequestCreate,
    RequestResponse,
)
from ridecells.domain.entities import RideRequest
from ridecells.domain.enums import RequestStatus
from ridecells.infrastructure.documents import DocumentStore
from ridecells.services.requests import RequestService

router = APIRouter(prefix="/requests", tags=["requests"])


def _service(
    store: DocumentStore = Depends(get_store),
    uid: str = Depends(get_current_uid),
) -> RequestService:
    return RequestService(store, uid)


async def _load(service: RequestService, cell_id: str, request_id: str) -> RideRequest:
    ride = await service.get_request(cell_id, request_id)
    if ride is None:
        raise HTTPException(status_code=404, detail="Request not found")
    return ride


def _ensure_transition(ride: RideRequest, new_status: RequestStatus) -> None:
    if not ride.can_transition_to(new_status):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot move request from {ride.status.value} to {new_status.value}",
        )


def _respond(service: RequestService, ride: RideRequest | None) -> RequestResponse:
    if ride is None:
        raise HTTPException(status_code=409, detail="Request changed concurrently")
    return RequestResponse.from_entity(ride, service.is_fresh(ride))


@router.post(
    "",
    status_code=202,
    response_model=RequestResponse,
    summary="Create a ride request",
    responses={202: {"description": "Request published to its pickup cell."}},
)
@limiter.limit(DEFAULT_RATE)
async def create_request(
    request: Request,
    body: RequestCreate,
    service: RequestService = Depends(_service),
):
    ride = await service.create_request(
        body.pickup.to_point(),
        body.dropoff.to_point() if body.dropoff else None,
    )
    if ride is None:
        raise HTTPException(status_code=503, detail="Request could not be stored")
    return RequestResponse.from_entity(ride)


@router.get(
    "/open",
    response_model=list[RequestResponse],
    summary="Fresh open requests around a point, newest first",
)
@limiter.limit(DEFAULT_RATE)
async def list_open_requests(
    request: Request,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    include_neighbors: bool = False,
    service: RequestService = Depends(_service),
):
    rides = await service.list_open_requests(lat, lng, include_neighbors)
    return [RequestResponse.from_entity(r) for r in rides]


@router.get(
    "/{cell_id}/{request_id}",
    response_model=RequestResponse,
    summary="Get one request",
)
@limiter.limit(DEFAULT_RATE)
async def get_request(
    request: Request,
    cell_id: str,
    request_id: str,
    service: RequestService = Depends(_service),
):
    ride = await _load(service, cell_id, request_id)
    return RequestResponse.from_entity(ride, service.is_fresh(ride))


@router.post(
    "/{cell_id}/{request_id}/heartbeat",
    status_code=204,
    summary="Refresh the rider heartbeat of a request",
)
@limiter.limit(DEFAULT_RATE)
async def heartbeat(
    request: Request,
    cell_id: str,
    request_id: str,
    service: RequestService = Depends(_service),
):
    ride = await _load(service, cell_id, request_id)
    if ride.created_by_uid != service.uid:
        raise HTTPException(status_code=403, detail="Only the creator may heartbeat")
    await service.update_heartbeat(cell_id, request_id)


@router.post(
    "/{cell_id}/{request_id}/assign",
    response_model=RequestResponse,
    summary="Assign the calling driver",
    description="Last write wins: there is no reservation between drivers.",
)
@limiter.limit(DEFAULT_RATE)
async def assign(
    request: Request,
    cell_id: str,
    request_id: str,
    service: RequestService = Depends(_service),
):
    ride = await _load(service, cell_id, request_id)
    _ensure_transition(ride, RequestStatus.ASSIGNED)
    return _respond(service, await service.assign_driver(cell_id, request_id))


@router.post(
    "/{cell_id}/{request_id}/complete",
    response_model=RequestResponse,
    summary="Complete an assigned request",
)
@limiter.limit(DEFAULT_RATE)
async def complete(
    request: Request,
    cell_id: str,
    request_id: str,
    service: RequestService = Depends(_service),
):
    ride = await _load(service, cell_id, request_id)
    _ensure_transition(ride, RequestStatus.COMPLETED)
    return _respond(service, await service.complete_request(cell_id, request_id))


@router.post(
    "/{cell_id}/{request_id}/cancel",
    response_model=RequestResponse,
    summary="Cancel a request",
    description=(
        "An open request may be cancelled by its creator only; an assigned "
        "one by the creator or the assigned driver."
    ),
)
@limiter.limit(DEFAULT_RATE)
async def cancel(
    request: Request,
    cell_id: str,
    request_id: str,
    service: RequestService = Depends(_service),
):
    ride = await _load(service, cell_id, request_id)
    _ensure_transition(ride, RequestStatus.CANCELLED)
    if not service.may_cancel(ride):
        raise HTTPException(status_code=403, detail="Not allowed to cancel this request")
    return _respond(service, await service.cancel_request(cell_id, request_id))


@router.post(
    "/{cell_id}/{request_id}/driver-location",
    status_code=204,
    summary="Publish the assigned driver's position",
)
@limiter.limit(DEFAULT_RATE)
async def driver_location(
    request: Request,
    cell_id: str,
    request_id: str,
    body: DriverLocationUpdate,
    service: RequestService = Depends(_service),
):
    ride = await _load(service, cell_id, request_id)
    if ride.status != RequestStatus.ASSIGNED or ride.assigned_driver_uid != service.uid:
        raise HTTPException(status_code=403, detail="Only the assigned driver may publish")
    await service.update_driver_location(cell_id, request_id, body.lat, body.lng)

"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ridecells.domain.entities import LocationPoint, PresenceRecord, RideRequest
from ridecells.domain.enums import PresenceRole


# ── Requests ──────────────────────────────────────────────────────────


class LocationIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=200)

    def to_point(self) -> LocationPoint:
        return LocationPoint(lat=self.lat, lng=self.lng, address=self.address)


class RequestCreate(BaseModel):
    pickup: LocationIn
    dropoff: Optional[LocationIn] = None


class DriverLocationUpdate(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class PresenceUpdate(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    role: PresenceRole = PresenceRole.DRIVER
    active_ride_id: Optional[str] = None
    previous_cell_id: Optional[str] = Field(
        None,
        description="Cell of the caller's last heartbeat; removed when the cell changed.",
    )


# ── Responses ─────────────────────────────────────────────────────────


class LocationOut(BaseModel):
    lat: float
    lng: float
    address: Optional[str] = None


class RequestResponse(BaseModel):
    request_id: str
    cell_id: str
    created_by_uid: str
    status: str
    pickup: LocationOut
    dropoff: Optional[LocationOut] = None
    assigned_driver_uid: Optional[str] = None
    client_name: Optional[str] = None
    driver_name: Optional[str] = None
    driver_lat: Optional[float] = None
    driver_lng: Optional[float] = None
    created_at: datetime
    updated_at: datetime
    last_heartbeat: Optional[datetime] = None
    is_fresh: bool = True

    @classmethod
    def from_entity(cls, request: RideRequest, is_fresh: bool = True) -> "RequestResponse":
        return cls(
            request_id=request.request_id,
            cell_id=request.cell_id,
            created_by_uid=request.created_by_uid,
            status=request.status.value,
            pickup=LocationOut(**request.pickup.to_map()),
            dropoff=LocationOut(**request.dropoff.to_map()) if request.dropoff else None,
            assigned_driver_uid=request.assigned_driver_uid,
            client_name=request.client_name,
            driver_name=request.driver_name,
            driver_lat=request.driver_lat,
            driver_lng=request.driver_lng,
            created_at=request.created_at,
            updated_at=request.updated_at,
            last_heartbeat=request.last_heartbeat,
            is_fresh=is_fresh,
        )


class PresenceResponse(BaseModel):
    uid: str
    role: str
    cell_id: str
    lat: float
    lng: float
    last_seen: Optional[datetime] = None
    active_ride_id: Optional[str] = None

    @classmethod
    def from_entity(cls, record: PresenceRecord) -> "PresenceResponse":
        return cls(
            uid=record.uid,
            role=record.role.value,
            cell_id=record.cell_id,
            lat=record.lat,
            lng=record.lng,
            last_seen=record.last_seen,
            active_ride_id=record.active_ride_id,
        )


class NeighborCell(BaseModel):
    canonical: str
    cell_id: str


class CellResponse(BaseModel):
    lat: float
    lng: float
    step_seconds: int
    canonical: str
    cell_id: str
    neighbors: list[NeighborCell]


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str

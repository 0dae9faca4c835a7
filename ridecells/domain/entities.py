"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``RideRequest``: enforces valid lifecycle transitions
  (open -> assigned -> completed | cancelled, open -> cancelled).
- Freshness is a *read-side* judgement (``is_fresh``): a stale record is never
  mutated or deleted here, it simply stops being shown.
- ``to_document`` / ``from_document`` map entities onto the JSON documents
  stored under ``cells/{cellId}/...`` and ``users/{uid}/history/...``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from .enums import REQUEST_TRANSITIONS, PresenceRole, RequestStatus


class InvalidStateTransition(Exception):
    """Raised when a request status change violates the state machine."""


# ── Timestamps ────────────────────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 UTC with fixed microsecond precision (sorts lexically)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ── Value Object ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class LocationPoint:
    lat: float
    lng: float
    address: Optional[str] = None

    def to_map(self) -> dict[str, Any]:
        data: dict[str, Any] = {"lat": self.lat, "lng": self.lng}
        if self.address is not None:
            data["address"] = self.address
        return data

    @classmethod
    def from_map(cls, data: dict[str, Any]) -> "LocationPoint":
        return cls(
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            address=data.get("address"),
        )


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class RideRequest:
    request_id: str
    created_by_uid: str
    pickup: LocationPoint
    cell_id: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    status: RequestStatus = RequestStatus.OPEN
    dropoff: Optional[LocationPoint] = None
    assigned_driver_uid: Optional[str] = None
    driver_lat: Optional[float] = None
    driver_lng: Optional[float] = None
    driver_location_updated_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    client_name: Optional[str] = None
    driver_name: Optional[str] = None

    def can_transition_to(self, new_status: RequestStatus) -> bool:
        return new_status in REQUEST_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: RequestStatus) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        if not self.can_transition_to(new_status):
            raise InvalidStateTransition(
                f"Cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    @property
    def is_terminal(self) -> bool:
        return not REQUEST_TRANSITIONS.get(self.status)

    def is_fresh(
        self,
        now: Optional[datetime] = None,
        stale_after: timedelta = timedelta(minutes=3),
    ) -> bool:
        """
        Open requests are fresh while the rider keeps heart-beating;
        every other status is always considered fresh.
        """
        if self.status != RequestStatus.OPEN:
            return True
        now = now or utcnow()
        heartbeat = self.last_heartbeat or self.created_at
        return now - heartbeat < stale_after

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "requestId": self.request_id,
            "createdByUid": self.created_by_uid,
            "pickup": self.pickup.to_map(),
            "dropoff": self.dropoff.to_map() if self.dropoff else None,
            "status": self.status.value,
            "assignedDriverUid": self.assigned_driver_uid,
            "createdAt": format_ts(self.created_at),
            "updatedAt": format_ts(self.updated_at),
            "cellId": self.cell_id,
            "expiresAt": format_ts(self.expires_at),
            "lastHeartbeat": format_ts(self.last_heartbeat),
        }
        if self.driver_lat is not None and self.driver_lng is not None:
            doc["driverLat"] = self.driver_lat
            doc["driverLng"] = self.driver_lng
            doc["driverLocationUpdatedAt"] = format_ts(
                self.driver_location_updated_at
            )
        if self.client_name is not None:
            doc["clientName"] = self.client_name
        if self.driver_name is not None:
            doc["driverName"] = self.driver_name
        return doc

    @classmethod
    def from_document(
        cls, data: dict[str, Any], doc_id: Optional[str] = None
    ) -> "RideRequest":
        now = utcnow()
        dropoff = data.get("dropoff")
        try:
            status = RequestStatus(data.get("status") or RequestStatus.OPEN)
        except ValueError:
            status = RequestStatus.OPEN
        driver_lat = data.get("driverLat")
        driver_lng = data.get("driverLng")
        return cls(
            request_id=data.get("requestId") or doc_id or "",
            created_by_uid=data.get("createdByUid") or "",
            pickup=LocationPoint.from_map(data["pickup"]),
            dropoff=LocationPoint.from_map(dropoff) if dropoff else None,
            status=status,
            assigned_driver_uid=data.get("assignedDriverUid"),
            created_at=parse_ts(data.get("createdAt")) or now,
            updated_at=parse_ts(data.get("updatedAt")) or now,
            cell_id=data.get("cellId") or "",
            expires_at=parse_ts(data.get("expiresAt")) or now,
            driver_lat=float(driver_lat) if driver_lat is not None else None,
            driver_lng=float(driver_lng) if driver_lng is not None else None,
            driver_location_updated_at=parse_ts(data.get("driverLocationUpdatedAt")),
            last_heartbeat=parse_ts(data.get("lastHeartbeat")),
            client_name=data.get("clientName"),
            driver_name=data.get("driverName"),
        )


@dataclass
class PresenceRecord:
    uid: str
    role: PresenceRole
    lat: float
    lng: float
    cell_id: str
    last_seen: Optional[datetime]
    expires_at: datetime
    updated_at: datetime
    platform: str = "unknown"
    app: str = "unknown"
    active_ride_id: Optional[str] = None

    def is_fresh(
        self,
        now: Optional[datetime] = None,
        stale_after: timedelta = timedelta(minutes=4),
    ) -> bool:
        """Seen strictly after ``now - stale_after``; never seen is stale."""
        if self.last_seen is None:
            return False
        now = now or utcnow()
        return self.last_seen > now - stale_after

    def to_document(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "role": self.role.value,
            "lastSeen": format_ts(self.last_seen),
            "expiresAt": format_ts(self.expires_at),
            "lat": self.lat,
            "lng": self.lng,
            "cellId": self.cell_id,
            "activeRideId": self.active_ride_id,
            "platform": self.platform,
            "app": self.app,
            "updatedAt": format_ts(self.updated_at),
        }

    @classmethod
    def from_document(
        cls, data: dict[str, Any], doc_id: Optional[str] = None
    ) -> "PresenceRecord":
        now = utcnow()
        role = (
            PresenceRole.DRIVER
            if data.get("role") == PresenceRole.DRIVER.value
            else PresenceRole.CLIENT
        )
        return cls(
            uid=data.get("uid") or doc_id or "",
            role=role,
            lat=float(data.get("lat") or 0.0),
            lng=float(data.get("lng") or 0.0),
            cell_id=data.get("cellId") or "",
            last_seen=parse_ts(data.get("lastSeen")),
            expires_at=parse_ts(data.get("expiresAt")) or now,
            updated_at=parse_ts(data.get("updatedAt")) or now,
            platform=data.get("platform") or "unknown",
            app=data.get("app") or "unknown",
            active_ride_id=data.get("activeRideId"),
        )


@dataclass
class HistoryEntry:
    """One ride as seen from one participant's history."""

    ride_id: str
    role: PresenceRole
    pickup: LocationPoint
    client_uid: str
    client_name: str
    created_at: datetime
    status: str = "pending"
    dropoff: Optional[LocationPoint] = None
    driver_uid: Optional[str] = None
    driver_name: Optional[str] = None
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def to_document(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "pickupLat": self.pickup.lat,
            "pickupLng": self.pickup.lng,
            "pickupAddress": self.pickup.address,
            "dropoffLat": self.dropoff.lat if self.dropoff else None,
            "dropoffLng": self.dropoff.lng if self.dropoff else None,
            "dropoffAddress": self.dropoff.address if self.dropoff else None,
            "clientUid": self.client_uid,
            "clientName": self.client_name,
            "driverUid": self.driver_uid,
            "driverName": self.driver_name,
            "createdAt": format_ts(self.created_at),
            "assignedAt": format_ts(self.assigned_at),
            "completedAt": format_ts(self.completed_at),
            "cancelledAt": format_ts(self.cancelled_at),
            "status": self.status,
        }

    @classmethod
    def from_document(cls, data: dict[str, Any], ride_id: str) -> "HistoryEntry":
        dropoff = None
        if data.get("dropoffLat") is not None and data.get("dropoffLng") is not None:
            dropoff = LocationPoint(
                lat=float(data["dropoffLat"]),
                lng=float(data["dropoffLng"]),
                address=data.get("dropoffAddress"),
            )
        return cls(
            ride_id=ride_id,
            role=PresenceRole(data.get("role") or PresenceRole.CLIENT.value),
            pickup=LocationPoint(
                lat=float(data.get("pickupLat") or 0.0),
                lng=float(data.get("pickupLng") or 0.0),
                address=data.get("pickupAddress"),
            ),
            dropoff=dropoff,
            client_uid=data.get("clientUid") or "",
            client_name=data.get("clientName") or "Cliente",
            driver_uid=data.get("driverUid"),
            driver_name=data.get("driverName"),
            created_at=parse_ts(data.get("createdAt")) or utcnow(),
            assigned_at=parse_ts(data.get("assignedAt")),
            completed_at=parse_ts(data.get("completedAt")),
            cancelled_at=parse_ts(data.get("cancelledAt")),
            status=data.get("status") or "pending",
        )

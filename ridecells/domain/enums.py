"""Domain enumerations and state-transition rules."""

import enum


class RequestStatus(str, enum.Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# State machine: maps current status -> set of valid next statuses
REQUEST_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    RequestStatus.OPEN: {RequestStatus.ASSIGNED, RequestStatus.CANCELLED},
    RequestStatus.ASSIGNED: {RequestStatus.COMPLETED, RequestStatus.CANCELLED},
    RequestStatus.COMPLETED: set(),
    RequestStatus.CANCELLED: set(),
}

# Statuses a rider still cares about in "my requests"
ACTIVE_STATUSES = (RequestStatus.OPEN, RequestStatus.ASSIGNED)


class PresenceRole(str, enum.Enum):
    DRIVER = "driver"
    CLIENT = "client"

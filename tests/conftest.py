"""
Shared test fixtures.

Everything runs against ``InMemoryDocumentStore`` so tests need no Redis.
Snapshot delivery is scheduled with ``loop.call_soon``; ``settle`` yields to
the loop long enough for pending deliveries to land.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ridecells.domain.entities import LocationPoint, RideRequest
from ridecells.domain.enums import RequestStatus
from ridecells.infrastructure.memory_store import InMemoryDocumentStore

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_request(
    request_id: str = "req-1",
    *,
    status: RequestStatus = RequestStatus.OPEN,
    created_by_uid: str = "rider-1",
    cell_id: str = "cell",
    created_at: datetime = NOW,
    last_heartbeat: datetime | None = NOW,
    assigned_driver_uid: str | None = None,
) -> RideRequest:
    return RideRequest(
        request_id=request_id,
        created_by_uid=created_by_uid,
        pickup=LocationPoint(4.7410, -74.0721),
        cell_id=cell_id,
        created_at=created_at,
        updated_at=created_at,
        expires_at=created_at + timedelta(hours=24),
        status=status,
        last_heartbeat=last_heartbeat,
        assigned_driver_uid=assigned_driver_uid,
    )


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()

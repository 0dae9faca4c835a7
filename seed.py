"""
Seed script -- populates the document store with demo data for reviewers.

Run against the Redis configured in ``REDIS_URL``:
    python seed.py

or, without Redis, print what a driver standing at the demo point would see:
    python seed.py --memory

Creates, around a fixed point in Suba (Bogota):
  - 4 user profiles
  - 5 driver presence records (3 fresh, 2 stale) spread over the 9-cell area
  - 4 open requests (3 fresh, 1 whose rider stopped heart-beating)
"""

import asyncio
import sys
from datetime import timedelta

from ridecells.config import settings
from ridecells.domain import geocell
from ridecells.domain.entities import LocationPoint, PresenceRecord, RideRequest, utcnow
from ridecells.domain.enums import PresenceRole, RequestStatus
from ridecells.infrastructure.documents import DocumentStore
from ridecells.infrastructure.memory_store import InMemoryDocumentStore
from ridecells.services.presence import PresenceService, presence_path
from ridecells.services.requests import RequestService, request_path

CENTER_LAT, CENTER_LNG = geocell.TEST_VECTORS["suba_center"]

# One cell is 30 arc-seconds, ~0.00833 degrees.
CELL = settings.cell_step_seconds / 3600.0

USERS = {
    "rider-ana": "Ana Rodriguez",
    "rider-luis": "Luis Gomez",
    "rider-sofia": "Sofia Herrera",
    "driver-carlos": "Carlos Perez",
}

DRIVERS = [
    # (uid, lat offset in cells, lng offset in cells, minutes since last seen)
    ("driver-carlos", 0.0, 0.0, 1),
    ("driver-marta", 1.0, 0.0, 2),
    ("driver-jorge", -1.0, 1.0, 3),
    ("driver-pedro", 0.0, -1.0, 10),
    ("driver-lucia", 1.0, 1.0, 45),
]

REQUESTS = [
    # (uid, lat offset, lng offset, minutes since heartbeat, dropoff)
    ("rider-ana", 0.1, 0.1, 0, (4.7110, -74.0721)),
    ("rider-luis", 0.9, 0.0, 1, (4.6980, -74.0490)),
    ("rider-sofia", -0.8, -0.9, 2, None),
    ("rider-sofia", 0.2, 0.8, 6, None),
]


async def seed(store: DocumentStore) -> None:
    now = utcnow()

    # ── Profiles ──────────────────────────────────────────────────────
    for uid, name in USERS.items():
        await store.set(f"users/{uid}", {"name": name})
    print(f"  Created {len(USERS)} profiles")

    # ── Presence ──────────────────────────────────────────────────────
    for uid, dlat, dlng, minutes in DRIVERS:
        lat, lng = CENTER_LAT + dlat * CELL, CENTER_LNG + dlng * CELL
        cell_id = geocell.compute_cell_id_from_coords(lat, lng)
        seen = now - timedelta(minutes=minutes)
        record = PresenceRecord(
            uid=uid,
            role=PresenceRole.DRIVER,
            lat=lat,
            lng=lng,
            cell_id=cell_id,
            last_seen=seen,
            expires_at=seen + timedelta(seconds=settings.presence_ttl_seconds),
            updated_at=seen,
            platform="seed",
            app=settings.app_name,
        )
        await store.set(presence_path(cell_id, uid), record.to_document())
    print(f"  Created {len(DRIVERS)} driver presence records")

    # ── Requests ──────────────────────────────────────────────────────
    for uid, dlat, dlng, minutes, dropoff in REQUESTS:
        lat, lng = CENTER_LAT + dlat * CELL, CENTER_LNG + dlng * CELL
        cell_id = geocell.compute_cell_id_from_coords(lat, lng)
        created = now - timedelta(minutes=minutes + 1)
        request = RideRequest(
            request_id=store.new_id(),
            created_by_uid=uid,
            pickup=LocationPoint(lat, lng),
            dropoff=LocationPoint(*dropoff) if dropoff else None,
            status=RequestStatus.OPEN,
            cell_id=cell_id,
            created_at=created,
            updated_at=created,
            expires_at=created + timedelta(seconds=settings.request_ttl_seconds),
            last_heartbeat=now - timedelta(minutes=minutes),
            client_name=USERS[uid],
        )
        await store.set(request_path(cell_id, request.request_id), request.to_document())
    print(f"  Created {len(REQUESTS)} open requests")


async def show(store: DocumentStore) -> None:
    presence = PresenceService(store, "driver-carlos", PresenceRole.DRIVER)
    requests = RequestService(store, "driver-carlos")

    print(f"\nCell at demo point: {geocell.compute_canonical(CENTER_LAT, CENTER_LNG)}")
    drivers = await presence.list_nearby_drivers(CENTER_LAT, CENTER_LNG)
    print(f"  Fresh drivers nearby: {len(drivers)}")
    for scope, include_neighbors in (("own cell", False), ("9 cells", True)):
        found = await requests.list_open_requests(CENTER_LAT, CENTER_LNG, include_neighbors)
        print(f"  Fresh open requests ({scope}): {len(found)}")
        for r in found:
            print(f"    {r.request_id}  {r.client_name}  created {r.created_at:%H:%M:%S}")


async def main():
    if "--memory" in sys.argv:
        store = InMemoryDocumentStore()
        print("Seeding in-memory store...")
        await seed(store)
        await show(store)
        return

    from ridecells.infrastructure.redis_client import close_redis, get_redis
    from ridecells.infrastructure.redis_store import RedisDocumentStore

    client = await get_redis()
    try:
        print("Seeding Redis document store...")
        await seed(RedisDocumentStore(client))
        print("\nSeed complete!")
    finally:
        await close_redis(client)


if __name__ == "__main__":
    asyncio.run(main())

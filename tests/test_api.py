"""
Integration tests for the REST API endpoints.

The document store dependency is overridden with an in-memory store, so the
Redis lifespan never runs (httpx's ASGITransport sends no lifespan events).
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from ridecells.api.app import create_app
from ridecells.api.dependencies import get_store
from ridecells.api.middleware import limiter
from ridecells.domain import geocell
from ridecells.infrastructure.memory_store import InMemoryDocumentStore

RIDER = {"X-User-Id": "rider-1"}
DRIVER = {"X-User-Id": "driver-1"}
STRANGER = {"X-User-Id": "someone-else"}

PICKUP = {"lat": 4.7410, "lng": -74.0721, "address": "Suba"}


# ── Fixture ───────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def store():
    store = InMemoryDocumentStore()
    await store.set("users/rider-1", {"name": "Ana"})
    await store.set("users/driver-1", {"name": "Carlos"})
    return store


@pytest_asyncio.fixture
async def client(store):
    app = create_app()
    app.dependency_overrides[get_store] = lambda: store
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _create(client: AsyncClient) -> dict:
    resp = await client.post("/api/v1/requests", json={"pickup": PICKUP}, headers=RIDER)
    assert resp.status_code == 202
    return resp.json()


def _url(ride: dict, action: str = "") -> str:
    base = f"/api/v1/requests/{ride['cell_id']}/{ride['request_id']}"
    return f"{base}/{action}" if action else base


# ── Tests ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_describe_cell(client: AsyncClient):
    resp = await client.get("/api/v1/cells", params={"lat": 0.5, "lng": 0.5})
    assert resp.status_code == 200
    data = resp.json()
    assert data["canonical"] == "N00_30_00_E000_30_00_s30"
    assert len(data["neighbors"]) == 8


@pytest.mark.asyncio
async def test_describe_cell_rejects_bad_input(client: AsyncClient):
    assert (await client.get("/api/v1/cells", params={"lat": 91, "lng": 0})).status_code == 422
    resp = await client.get("/api/v1/cells", params={"lat": 0, "lng": 0, "step": 0})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_create_request_returns_202(client: AsyncClient):
    data = await _create(client)
    assert data["status"] == "open"
    assert data["client_name"] == "Ana"
    assert data["cell_id"] == geocell.compute_cell_id_from_coords(
        PICKUP["lat"], PICKUP["lng"]
    )
    assert data["is_fresh"] is True


@pytest.mark.asyncio
async def test_create_requires_user_header(client: AsyncClient):
    resp = await client.post("/api/v1/requests", json={"pickup": PICKUP})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_create_rejects_out_of_range_pickup(client: AsyncClient):
    resp = await client.post(
        "/api/v1/requests", json={"pickup": {"lat": 95, "lng": 0}}, headers=RIDER
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_get_request(client: AsyncClient):
    ride = await _create(client)
    resp = await client.get(_url(ride), headers=DRIVER)
    assert resp.status_code == 200
    assert resp.json()["request_id"] == ride["request_id"]


@pytest.mark.asyncio
async def test_get_request_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/requests/nowhere/nothing", headers=RIDER)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_open_requests(client: AsyncClient):
    ride = await _create(client)
    resp = await client.get(
        "/api/v1/requests/open",
        params={"lat": PICKUP["lat"], "lng": PICKUP["lng"]},
        headers=DRIVER,
    )
    assert resp.status_code == 200
    assert [r["request_id"] for r in resp.json()] == [ride["request_id"]]

    far = await client.get(
        "/api/v1/requests/open",
        params={"lat": 10, "lng": 10, "include_neighbors": True},
        headers=DRIVER,
    )
    assert far.json() == []


@pytest.mark.asyncio
async def test_full_lifecycle(client: AsyncClient):
    ride = await _create(client)

    assert (await client.post(_url(ride, "heartbeat"), headers=RIDER)).status_code == 204

    assigned = await client.post(_url(ride, "assign"), headers=DRIVER)
    assert assigned.status_code == 200
    assert assigned.json()["status"] == "assigned"
    assert assigned.json()["driver_name"] == "Carlos"

    moved = await client.post(
        _url(ride, "driver-location"), json={"lat": 4.75, "lng": -74.08}, headers=DRIVER
    )
    assert moved.status_code == 204
    current = (await client.get(_url(ride), headers=RIDER)).json()
    assert (current["driver_lat"], current["driver_lng"]) == (4.75, -74.08)

    completed = await client.post(_url(ride, "complete"), headers=DRIVER)
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_illegal_transitions_conflict(client: AsyncClient):
    ride = await _create(client)
    assert (await client.post(_url(ride, "complete"), headers=RIDER)).status_code == 409

    await client.post(_url(ride, "cancel"), headers=RIDER)
    assert (await client.post(_url(ride, "cancel"), headers=RIDER)).status_code == 409
    assert (await client.post(_url(ride, "assign"), headers=DRIVER)).status_code == 409


@pytest.mark.asyncio
async def test_cancel_permissions(client: AsyncClient):
    ride = await _create(client)
    assert (await client.post(_url(ride, "cancel"), headers=DRIVER)).status_code == 403

    await client.post(_url(ride, "assign"), headers=DRIVER)
    assert (await client.post(_url(ride, "cancel"), headers=STRANGER)).status_code == 403
    resp = await client.post(_url(ride, "cancel"), headers=DRIVER)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_only_assigned_driver_publishes_location(client: AsyncClient):
    ride = await _create(client)
    resp = await client.post(
        _url(ride, "driver-location"), json={"lat": 4.75, "lng": -74.08}, headers=DRIVER
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_presence_roundtrip(client: AsyncClient, store):
    first = await client.put(
        "/api/v1/presence", json={"lat": 0.5041, "lng": 0.5041}, headers=DRIVER
    )
    assert first.status_code == 200
    cell_id = first.json()["cell_id"]

    nearby = await client.get(
        "/api/v1/presence/drivers", params={"lat": 0.5041, "lng": 0.5041}, headers=RIDER
    )
    assert [d["uid"] for d in nearby.json()] == ["driver-1"]

    moved = await client.put(
        "/api/v1/presence",
        json={"lat": 10.0, "lng": 10.0, "previous_cell_id": cell_id},
        headers=DRIVER,
    )
    assert moved.json()["cell_id"] != cell_id
    assert await store.get(f"cells/{cell_id}/presence/driver-1") is None

    gone = await client.delete(f"/api/v1/presence/{moved.json()['cell_id']}", headers=DRIVER)
    assert gone.status_code == 204
    assert await store.get(f"cells/{moved.json()['cell_id']}/presence/driver-1") is None


@pytest.mark.asyncio
async def test_client_goes_offline_with_own_role(client: AsyncClient, store):
    online = await client.put(
        "/api/v1/presence",
        json={"lat": 0.5041, "lng": 0.5041, "role": "client"},
        headers=RIDER,
    )
    cell_id = online.json()["cell_id"]
    assert online.json()["role"] == "client"

    bad = await client.delete(
        f"/api/v1/presence/{cell_id}", params={"role": "pilot"}, headers=RIDER
    )
    assert bad.status_code == 422

    gone = await client.delete(
        f"/api/v1/presence/{cell_id}", params={"role": "client"}, headers=RIDER
    )
    assert gone.status_code == 204
    assert await store.get(f"cells/{cell_id}/presence/rider-1") is None

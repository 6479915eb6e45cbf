import asyncio
from unittest.mock import AsyncMock

import httpx
from fastapi.testclient import TestClient

from concierge.main import create_app
from concierge.proposals import ProposalGenerator
from concierge.store.backing import MemoryKeyValueStore
from concierge.store.sync_bridge import SyncBridge
from concierge.store.trips_store import TripsStore


def _client(store: TripsStore | None = None) -> TestClient:
    store = store or TripsStore(MemoryKeyValueStore())
    partners = AsyncMock()
    partners.search_activities = AsyncMock(return_value=[{"name": "Kayak"}])
    partners.search_transfers = AsyncMock(return_value=[])
    return TestClient(create_app(store=store, generator=ProposalGenerator(store, partners)))


def test_trip_lifecycle_over_http():
    client = _client()

    trip_id = client.post("/api/trips", json={"title": "Greek islands", "destination": "Santorini"}).json()["id"]
    client.post(f"/api/trips/{trip_id}/messages", json={"role": "user", "content": "Two adults, July"})
    client.patch(f"/api/trips/{trip_id}/snapshot", json={"budget": "9000"})
    draft = client.patch(
        f"/api/trips/{trip_id}/draft",
        json={
            "destination": "Santorini",
            "checkIn": "2026-07-01",
            "checkOut": "2026-07-08",
            "adults": 2,
            "accommodationType": "Yacht",
            "includeActivities": True,
        },
    ).json()
    assert draft["lastPatch"]["adults"] == 2

    proposal = client.post(f"/api/trips/{trip_id}/proposal").json()
    assert [s["title"] for s in proposal["sections"]] == ["Yachts", "Activities", "Experiences"]
    assert proposal["tripId"] == trip_id

    state = client.get("/api/trips").json()
    trip = state["trips"][0]
    assert trip["status"] == "Ready"
    assert trip["lastMessage"] == "Two adults, July"
    assert state["snapshots"][trip_id]["budget"] == "9000"
    assert state["selections"][trip_id]["activities"] == [{"name": "Kayak"}]

    assert client.get(f"/api/trips/{trip_id}/proposal").json()["title"] == "Greek islands"
    messages = client.get(f"/api/trips/{trip_id}/messages").json()
    assert messages[0]["createdAt"]


def test_create_trip_without_body():
    client = _client()
    response = client.post("/api/trips")
    assert response.status_code == 200
    assert client.get("/api/trips").json()["trips"][0]["title"] == "New Trip"


def test_selection_patch_and_price():
    client = _client()
    trip_id = client.post("/api/trips").json()["id"]
    client.patch(f"/api/trips/{trip_id}/draft", json={"adults": 3, "checkIn": "2026-01-01", "checkOut": "2026-01-04"})
    client.patch(f"/api/trips/{trip_id}/selection", json={"flight": {"price": "USD 500"}, "activity": {"price": "40"}})
    selection = client.patch(f"/api/trips/{trip_id}/selection", json={"hotel": {"price": "200"}, "clear": ["activity"]}).json()

    assert selection["flight"] == {"price": "USD 500"}
    assert selection["activity"] is None

    price = client.get(f"/api/trips/{trip_id}/price").json()
    assert price["travelers"] == 3
    assert price["flightTotal"] == 1500
    assert price["hotelTotal"] == 600
    assert price["total"] == 2280


def test_unknown_proposal_is_404():
    client = _client()
    assert client.get("/api/trips/missing/proposal").status_code == 404


def test_update_trip_and_delete():
    client = _client()
    keep = client.post("/api/trips").json()["id"]
    seeded = client.post("/api/trips/seed").json()["id"]
    assert seeded == keep

    other = client.post("/api/trips", json={"title": "Temp"}).json()["id"]
    updated = client.patch(f"/api/trips/{other}", json={"status": "Booked", "title": "Renamed"}).json()
    assert updated["status"] == "Booked"
    assert updated["title"] == "Renamed"

    client.delete(f"/api/trips/{other}")
    ids = [t["id"] for t in client.get("/api/trips").json()["trips"]]
    assert ids == [keep]

    client.delete("/api/store")
    assert client.get("/api/trips").json()["trips"] == []


def test_scope_endpoint_isolates_partitions():
    client = _client()
    assert client.post("/api/scope", json={"identity": "agent:a@x.com"}).json()["changed"] is True
    trip_id = client.post("/api/trips").json()["id"]

    client.post("/api/scope", json={"identity": "agent:b@x.com"})
    assert client.get("/api/trips").json()["trips"] == []

    body = client.post("/api/scope", json={"identity": "agent:a@x.com"}).json()
    assert body["storageKey"].endswith("__agent:a@x.com")
    assert client.get("/api/trips").json()["trips"][0]["id"] == trip_id


def test_user_data_requires_matching_identity():
    client = _client()
    assert client.get("/api/user-data").status_code == 401

    response = client.post(
        "/api/user-data",
        json={"email": "a@x.com", "tripsState": {"trips": []}},
        headers={"X-User-Email": "b@x.com"},
    )
    assert response.status_code == 401


def test_user_data_round_trip():
    client = _client()
    state = {"trips": [{"id": "t1", "title": "Remote"}], "messages": {}}
    response = client.post(
        "/api/user-data",
        json={"email": "A@x.com", "tripsState": state},
        headers={"X-User-Email": "a@x.com"},
    )
    assert response.json() == {"ok": True}

    fetched = client.get("/api/user-data", headers={"X-User-Email": "A@X.com"}).json()
    assert fetched["tripsState"] == state


def test_push_and_pull_between_two_devices():
    async def run() -> None:
        remote_app = create_app(store=TripsStore(MemoryKeyValueStore()), user_data=MemoryKeyValueStore())
        transport = httpx.ASGITransport(app=remote_app)

        laptop_bridge = SyncBridge("http://remote/api/user-data", debounce=0.01, transport=transport)
        laptop = TripsStore(MemoryKeyValueStore(), sync=laptop_bridge, identity="a@x.com")
        trip_id = laptop.create_trip({"destination": "Zanzibar"})
        await laptop_bridge.flush()

        phone_bridge = SyncBridge("http://remote/api/user-data", debounce=0.01, transport=transport)
        phone = TripsStore(MemoryKeyValueStore(), sync=phone_bridge)
        assert await phone.sync_from_server("a@x.com") is True
        phone_bridge.cancel()

        assert phone.get_snapshot(trip_id)["destination"] == "Zanzibar"

    asyncio.run(run())


def test_pull_endpoint_uses_sync_bridge():
    remote_state = {"trips": [{"id": "r1", "title": "From server", "status": "Draft"}]}
    bridge = SyncBridge(
        "http://remote/api/user-data",
        debounce=60,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"tripsState": remote_state})),
    )
    store = TripsStore(MemoryKeyValueStore(), sync=bridge)
    client = _client(store)

    assert client.post("/api/sync/pull", json={"email": "a@x.com"}).json() == {"applied": True}
    assert client.get("/api/trips").json()["trips"][0]["id"] == "r1"

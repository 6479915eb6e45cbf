import asyncio
import json
from typing import Any, Dict, List

import httpx

from concierge.store.backing import MemoryKeyValueStore
from concierge.store.sync_bridge import Debouncer, SyncBridge
from concierge.store.trips_store import TripsStore

ENDPOINT = "http://remote.test/api/user-data"


def _bridge(handler, debounce: float = 0.05) -> SyncBridge:
    return SyncBridge(ENDPOINT, debounce=debounce, transport=httpx.MockTransport(handler))


def test_burst_of_mutations_produces_one_push():
    async def run() -> None:
        pushed: List[Dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            pushed.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})

        bridge = _bridge(handler)
        store = TripsStore(MemoryKeyValueStore(), sync=bridge, identity="A@x.com")
        trip_id = store.create_trip()
        store.update_snapshot(trip_id, {"destination": "Paris"})
        store.add_message(trip_id, "user", "hello")
        assert pushed == []

        await asyncio.sleep(0.2)
        await bridge.flush()

        assert len(pushed) == 1
        assert pushed[0]["email"] == "a@x.com"
        state = pushed[0]["tripsState"]
        assert state["trips"][0]["lastMessage"] == "hello"
        assert state["snapshots"][trip_id]["destination"] == "Paris"

    asyncio.run(run())


def test_flush_pushes_pending_state_immediately():
    async def run() -> None:
        pushed: List[Dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            pushed.append(json.loads(request.content))
            return httpx.Response(200)

        bridge = _bridge(handler, debounce=60)
        store = TripsStore(MemoryKeyValueStore(), sync=bridge, identity="a@x.com")
        store.create_trip()
        assert bridge.pending

        await bridge.flush()
        assert len(pushed) == 1
        assert not bridge.pending

    asyncio.run(run())


def test_guest_scope_never_pushes():
    async def run() -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("guest state must stay local")

        bridge = _bridge(handler)
        store = TripsStore(MemoryKeyValueStore(), sync=bridge)
        store.create_trip()
        assert not bridge.pending
        await bridge.flush()

    asyncio.run(run())


def test_push_failures_are_swallowed():
    async def run() -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("offline", request=request)

        bridge = _bridge(handler, debounce=0)
        store = TripsStore(MemoryKeyValueStore(), sync=bridge, identity="a@x.com")
        trip_id = store.create_trip()
        await bridge.flush()

        assert store.get_trip(trip_id) is not None
        assert await bridge.push("a@x.com", store.trips_state_snapshot()) is False

    asyncio.run(run())


def test_non_2xx_push_reports_failure():
    async def run() -> None:
        bridge = _bridge(lambda request: httpx.Response(401, json={"error": "Unauthorized"}))
        assert await bridge.push("a@x.com", {"trips": []}) is False

    asyncio.run(run())


def test_debouncer_resets_instead_of_accumulating():
    async def run() -> None:
        fired: List[str] = []
        debouncer = Debouncer(0.05)
        debouncer.call(lambda: fired.append("first"))
        await asyncio.sleep(0.02)
        debouncer.call(lambda: fired.append("second"))
        await asyncio.sleep(0.15)
        assert fired == ["second"]

    asyncio.run(run())


def test_debouncer_without_event_loop_is_skipped():
    assert Debouncer(0.01).call(lambda: None) is False


def test_pull_replaces_well_formed_fields_only():
    async def run() -> None:
        remote_state = {
            "trips": [{"id": "remote-1", "title": "Remote trip", "status": "Ready"}],
            "messages": "not-a-mapping",
            "proposals": {"remote-1": {"tripId": "remote-1", "sections": []}},
            "selections": ["wrong", "shape"],
        }

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                assert request.headers["x-user-email"] == "a@x.com"
                return httpx.Response(200, json={"tripsState": remote_state})
            return httpx.Response(200)

        bridge = _bridge(handler)
        store = TripsStore(MemoryKeyValueStore(), sync=bridge)
        local_id = store.create_trip()
        store.add_message(local_id, "user", "local note")

        assert await store.sync_from_server(" A@x.com ") is True
        bridge.cancel()

        state = store.get_state()
        assert [t["id"] for t in state["trips"]] == ["remote-1"]
        assert state["proposals"] == remote_state["proposals"]
        assert state["messages"][local_id][0]["content"] == "local note"
        assert local_id in state["selections"]
        assert store.remote_identity == "a@x.com"

    asyncio.run(run())


def test_pull_failures_keep_local_state():
    async def run() -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("offline", request=request)

        store = TripsStore(MemoryKeyValueStore(), sync=_bridge(handler))
        trip_id = store.create_trip()
        assert await store.sync_from_server("a@x.com") is False
        assert store.get_trip(trip_id) is not None

    asyncio.run(run())


def test_pull_ignores_payload_without_trips_state():
    async def run() -> None:
        bridge = _bridge(lambda request: httpx.Response(200, json={"tripsState": None}))
        assert await bridge.pull("a@x.com") is None

    asyncio.run(run())


def test_push_started_during_flush_is_still_tracked():
    async def run() -> None:
        calls = 0
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                store.add_message(trip_id, "user", "one more thing")
                await asyncio.sleep(0.1)
            else:
                await release.wait()
            return httpx.Response(200)

        bridge = _bridge(handler, debounce=0.01)
        store = TripsStore(MemoryKeyValueStore(), sync=bridge, identity="a@x.com")
        trip_id = store.create_trip()

        await bridge.flush()
        assert calls == 2
        assert bridge.pending

        release.set()
        await asyncio.sleep(0.05)
        assert not bridge.pending

    asyncio.run(run())

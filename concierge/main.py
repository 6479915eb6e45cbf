from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from concierge.config import ALLOWED_ORIGINS, STORAGE_DIR
from concierge.pricing import compute_price
from concierge.proposals import ProposalGenerator
from concierge.schemas import (
    CreateTripRequest,
    Message,
    MessageRequest,
    PriceBreakdown,
    Proposal,
    PullRequest,
    ScopeRequest,
    SelectionPatch,
    TripUpdate,
    UserDataPayload,
)
from concierge.store.backing import FileKeyValueStore, KeyValueStore
from concierge.store.sync_bridge import SyncBridge
from concierge.store.trips_store import CLEAR, TripsStore, normalize_identity, now_iso

USER_DATA_PREFIX = "user_data__"


def create_app(
    store: Optional[TripsStore] = None,
    generator: Optional[ProposalGenerator] = None,
    user_data: Optional[KeyValueStore] = None,
) -> FastAPI:
    if store is None:
        store = TripsStore(FileKeyValueStore(STORAGE_DIR), sync=SyncBridge())
    generator = generator or ProposalGenerator(store)
    user_data = user_data if user_data is not None else store.backing

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Push whatever is still waiting on the debounce window.
        if store.sync is not None:
            await store.sync.flush()

    app = FastAPI(title="Travel Concierge Trips API", lifespan=lifespan)
    app.state.store = store
    app.state.generator = generator
    app.state.user_data = user_data
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_routes(app)
    return app


def get_store(request: Request) -> TripsStore:
    return request.app.state.store


def get_generator(request: Request) -> ProposalGenerator:
    return request.app.state.generator


def get_user_data(request: Request) -> KeyValueStore:
    return request.app.state.user_data


def _register_routes(app: FastAPI) -> None:
    @app.get("/api/trips")
    async def read_state(store: TripsStore = Depends(get_store)) -> Dict[str, Any]:
        return store.get_state()

    @app.post("/api/trips")
    async def create_trip(
        payload: Optional[CreateTripRequest] = None,
        store: TripsStore = Depends(get_store),
    ) -> Dict[str, str]:
        trip_id = store.create_trip((payload or CreateTripRequest()).model_dump(exclude_none=True))
        return {"id": trip_id}

    @app.post("/api/trips/seed")
    async def seed_trip(store: TripsStore = Depends(get_store)) -> Dict[str, str]:
        return {"id": store.ensure_seed_trip()}

    @app.patch("/api/trips/{trip_id}")
    async def update_trip(
        trip_id: str,
        payload: TripUpdate,
        store: TripsStore = Depends(get_store),
    ) -> Dict[str, Any]:
        store.update_trip(trip_id, payload.model_dump(exclude_unset=True))
        return store.get_trip(trip_id) or {}

    @app.delete("/api/trips/{trip_id}")
    async def delete_trip(trip_id: str, store: TripsStore = Depends(get_store)) -> Dict[str, bool]:
        store.delete_trip(trip_id)
        return {"ok": True}

    @app.get("/api/trips/{trip_id}/messages")
    async def list_messages(trip_id: str, store: TripsStore = Depends(get_store)) -> List[Message]:
        return [Message.model_validate(m) for m in store.get_trip_messages(trip_id)]

    @app.post("/api/trips/{trip_id}/messages")
    async def add_message(
        trip_id: str,
        payload: MessageRequest,
        store: TripsStore = Depends(get_store),
    ) -> Message:
        return Message.model_validate(store.add_message(trip_id, payload.role, payload.content))

    @app.patch("/api/trips/{trip_id}/snapshot")
    async def update_snapshot(
        trip_id: str,
        patch: Dict[str, Any] = Body(...),
        store: TripsStore = Depends(get_store),
    ) -> Dict[str, Any]:
        store.update_snapshot(trip_id, patch)
        return store.get_snapshot(trip_id)

    @app.patch("/api/trips/{trip_id}/draft")
    async def apply_trip_patch(
        trip_id: str,
        patch: Dict[str, Any] = Body(...),
        store: TripsStore = Depends(get_store),
    ) -> Dict[str, Any]:
        store.apply_trip_patch(trip_id, patch)
        return store.get_trip_draft(trip_id)

    @app.get("/api/trips/{trip_id}/selection")
    async def read_selection(trip_id: str, store: TripsStore = Depends(get_store)) -> Dict[str, Any]:
        return store.get_proposal_selection(trip_id)

    @app.patch("/api/trips/{trip_id}/selection")
    async def update_selection(
        trip_id: str,
        payload: SelectionPatch,
        store: TripsStore = Depends(get_store),
    ) -> Dict[str, Any]:
        fields = {name: getattr(payload, name) for name in ("flight", "hotel", "activity", "transfer")}
        for name in payload.clear:
            fields[name] = CLEAR
        store.set_proposal_selection(trip_id, **fields)
        return store.get_proposal_selection(trip_id)

    @app.post("/api/trips/{trip_id}/proposal")
    async def generate_proposal(
        trip_id: str,
        generator: ProposalGenerator = Depends(get_generator),
    ) -> Proposal:
        return Proposal.model_validate(await generator.generate_proposal(trip_id))

    @app.get("/api/trips/{trip_id}/proposal")
    async def read_proposal(trip_id: str, store: TripsStore = Depends(get_store)) -> Proposal:
        proposal = store.get_proposal(trip_id)
        if proposal is None:
            raise HTTPException(status_code=404, detail="No proposal for this trip")
        return Proposal.model_validate(proposal)

    @app.get("/api/trips/{trip_id}/price")
    async def read_price(trip_id: str, store: TripsStore = Depends(get_store)) -> PriceBreakdown:
        return compute_price(store.get_proposal_selection(trip_id), store.get_trip_draft(trip_id))

    @app.post("/api/scope")
    async def set_scope(payload: ScopeRequest, store: TripsStore = Depends(get_store)) -> Dict[str, Any]:
        changed = store.set_user_scope(payload.identity)
        return {"changed": changed, "storageKey": store.storage_key}

    @app.post("/api/sync/pull")
    async def pull_from_remote(payload: PullRequest, store: TripsStore = Depends(get_store)) -> Dict[str, bool]:
        return {"applied": await store.sync_from_server(payload.email)}

    @app.delete("/api/store")
    async def clear_store(store: TripsStore = Depends(get_store)) -> Dict[str, bool]:
        store.clear_store()
        return {"ok": True}

    # Remote counterpart of the sync bridge: one trips-state document per user.
    @app.get("/api/user-data")
    async def read_user_data(
        x_user_email: Optional[str] = Header(default=None),
        user_data: KeyValueStore = Depends(get_user_data),
    ) -> Dict[str, Any]:
        email = normalize_identity(x_user_email)
        if not email:
            raise HTTPException(status_code=401, detail="Unauthorized")
        document = user_data.load_json(USER_DATA_PREFIX + email) or {}
        return {"tripsState": document.get("tripsState") if isinstance(document, dict) else None}

    @app.post("/api/user-data")
    async def write_user_data(
        payload: UserDataPayload,
        x_user_email: Optional[str] = Header(default=None),
        user_data: KeyValueStore = Depends(get_user_data),
    ) -> Dict[str, bool]:
        email = normalize_identity(x_user_email)
        if not email or email != normalize_identity(payload.email):
            raise HTTPException(status_code=401, detail="Unauthorized")
        key = USER_DATA_PREFIX + email
        existing = user_data.load_json(key)
        existing = existing if isinstance(existing, dict) else {}
        document = {
            **existing,
            "tripsState": payload.trips_state or existing.get("tripsState"),
            "updatedAt": now_iso(),
        }
        user_data.set(key, json.dumps(document, default=str))
        return {"ok": True}


app = create_app()

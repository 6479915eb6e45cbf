"""In-memory trip repository with per-scope persistence and remote sync."""
from __future__ import annotations

import copy
import json
import logging
import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from concierge.config import BASE_STORAGE_KEY, LOG_LEVEL
from concierge.schemas import TripStatus
from concierge.store.backing import KeyValueStore, MemoryKeyValueStore
from concierge.store.sync_bridge import SyncBridge

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(handler)
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
logger.propagate = False

GUEST_SCOPE = "guest"
LAST_MESSAGE_CHARS = 120
SELECTION_FIELDS = ("flight", "hotel", "activity", "transfer")
STATE_FIELDS = ("trips", "messages", "snapshots", "tripDrafts", "proposals", "selections")
SNAPSHOT_FIELDS = ("departure", "destination", "dates", "travelers", "budget", "style")
SEED_TRIP = {"title": "Mediterranean Escape", "destination": "Mallorca", "style": "Boutique"}


class _Clear:
    """Marker that explicitly empties a selection field."""

    def __repr__(self) -> str:
        return "CLEAR"


CLEAR = _Clear()

Listener = Callable[[], None]


def default_state() -> Dict[str, Any]:
    return {
        "trips": [],
        "messages": {},
        "snapshots": {},
        "tripDrafts": {},
        "proposals": {},
        "selections": {},
    }


def empty_selection() -> Dict[str, Any]:
    return {name: None for name in SELECTION_FIELDS}


def normalize_identity(identity: Optional[str]) -> str:
    return (identity or "").strip().lower()


def storage_key_for(identity: Optional[str], base: str = BASE_STORAGE_KEY) -> str:
    return f"{base}__{normalize_identity(identity) or GUEST_SCOPE}"


def new_id() -> str:
    rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
    return rand + _base36(int(time.time() * 1000))


def _base36(value: int) -> str:
    digits = string.digits + string.ascii_lowercase
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TripsStore:
    """Owns the trips state for one active storage partition.

    Every mutation goes through :meth:`_set_state`, which persists the full
    state to the active partition, schedules a debounced remote push and
    notifies subscribers in subscription order. Persistence and network
    failures never reach the caller.
    """

    def __init__(
        self,
        backing: Optional[KeyValueStore] = None,
        *,
        sync: Optional[SyncBridge] = None,
        identity: str = "",
        base_key: str = BASE_STORAGE_KEY,
    ):
        self.backing = backing if backing is not None else MemoryKeyValueStore()
        self.sync = sync
        self.base_key = base_key
        self._listeners: List[Listener] = []
        self._remote_identity = self._remote_identity_for(identity)
        self._storage_key = storage_key_for(identity, base_key)
        self._state = self._load(self._storage_key)

    # ------------------------------------------------------------------
    # state plumbing
    # ------------------------------------------------------------------
    @property
    def storage_key(self) -> str:
        return self._storage_key

    @property
    def remote_identity(self) -> str:
        return self._remote_identity

    def get_state(self) -> Dict[str, Any]:
        """Detached copy of the whole repository."""
        return copy.deepcopy(self._state)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def trips_state_snapshot(self) -> Dict[str, Any]:
        return {name: copy.deepcopy(self._state.get(name)) for name in STATE_FIELDS}

    def _load(self, key: str) -> Dict[str, Any]:
        try:
            parsed = self.backing.load_json(key)
        except Exception:
            logger.warning("Unable to read partition %s; starting empty", key, exc_info=True)
            parsed = None
        state = default_state()
        if isinstance(parsed, dict):
            state.update(parsed)
        return state

    def _persist(self) -> None:
        try:
            self.backing.set(self._storage_key, json.dumps(self._state, default=str))
        except Exception:
            logger.warning("Persisting %s failed; keeping in-memory state", self._storage_key, exc_info=True)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Trips store subscriber raised")

    def _set_state(self, updater: Callable[[Dict[str, Any]], Dict[str, Any]] | Dict[str, Any]) -> None:
        self._state = updater(self._state) if callable(updater) else updater
        self._persist()
        if self.sync is not None and self._remote_identity:
            self.sync.schedule(lambda: (self._remote_identity, self.trips_state_snapshot()))
        self._notify()

    def _find_trip(self, trip_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not trip_id:
            return None
        return next((t for t in self._state["trips"] if t.get("id") == trip_id), None)

    def _map_trip(self, trip_id: str, patch: Mapping[str, Any]) -> None:
        def update(s: Dict[str, Any]) -> Dict[str, Any]:
            trips = [{**t, **patch} if t.get("id") == trip_id else t for t in s["trips"]]
            return {**s, "trips": trips}

        self._set_state(update)

    # ------------------------------------------------------------------
    # scope
    # ------------------------------------------------------------------
    @staticmethod
    def _remote_identity_for(identity: Optional[str]) -> str:
        normalized = normalize_identity(identity)
        return "" if normalized == GUEST_SCOPE else normalized

    def set_user_scope(self, identity: Optional[str]) -> bool:
        """Swap to the partition of ``identity``; returns ``False`` when already active."""
        next_key = storage_key_for(identity, self.base_key)
        if next_key == self._storage_key:
            return False
        self._remote_identity = self._remote_identity_for(identity)
        self._storage_key = next_key
        self._state = self._load(next_key)
        logger.info("Switched trips scope to %s (%d trips)", next_key, len(self._state["trips"]))
        self._notify()
        return True

    # ------------------------------------------------------------------
    # remote sync
    # ------------------------------------------------------------------
    def apply_remote_state(self, trips_state: Any) -> bool:
        """Replace each top-level table with its remote value when well-formed."""
        if not isinstance(trips_state, dict):
            return False

        def merge(s: Dict[str, Any]) -> Dict[str, Any]:
            merged = dict(s)
            for name in STATE_FIELDS:
                value = trips_state.get(name)
                expected = list if name == "trips" else dict
                if isinstance(value, expected):
                    merged[name] = value
            return merged

        self._set_state(merge)
        return True

    async def sync_from_server(self, email: str) -> bool:
        if not email:
            return False
        self._remote_identity = normalize_identity(email)
        if self.sync is None:
            return False
        trips_state = await self.sync.pull(self._remote_identity)
        if trips_state is None:
            return False
        logger.info("Hydrated trips state from remote for %s", self._remote_identity)
        return self.apply_remote_state(trips_state)

    # ------------------------------------------------------------------
    # trips
    # ------------------------------------------------------------------
    def _insert_trip(self, trip_id: str, initial: Mapping[str, Any]) -> None:
        created_at = now_iso()
        trip = {
            "id": trip_id,
            "title": initial.get("title") or "New Trip",
            "status": initial.get("status") or TripStatus.DRAFT.value,
            "lastMessage": "",
            "createdAt": created_at,
            "updatedAt": created_at,
        }
        snapshot = {name: initial.get(name) or "" for name in SNAPSHOT_FIELDS}

        def insert(s: Dict[str, Any]) -> Dict[str, Any]:
            return {
                **s,
                "trips": [trip, *s["trips"]],
                "messages": {**s["messages"], trip_id: s["messages"].get(trip_id) or []},
                "snapshots": {**s["snapshots"], trip_id: s["snapshots"].get(trip_id) or snapshot},
                "tripDrafts": {**s["tripDrafts"], trip_id: s["tripDrafts"].get(trip_id) or {}},
                "selections": {**s["selections"], trip_id: s["selections"].get(trip_id) or empty_selection()},
            }

        self._set_state(insert)
        logger.debug("Created trip %s", trip_id)

    def create_trip(self, initial: Optional[Mapping[str, Any]] = None) -> str:
        trip_id = new_id()
        self._insert_trip(trip_id, initial or {})
        return trip_id

    def ensure_trip(self, trip_id: Optional[str] = None) -> str:
        existing = self._find_trip(trip_id)
        if existing is not None:
            return existing["id"]
        trip_id = trip_id or new_id()
        self._insert_trip(trip_id, {})
        return trip_id

    def ensure_seed_trip(self) -> str:
        if self._state["trips"]:
            return self._state["trips"][0]["id"]
        return self.create_trip(SEED_TRIP)

    def get_trip(self, trip_id: str) -> Optional[Dict[str, Any]]:
        trip = self._find_trip(trip_id)
        return copy.deepcopy(trip) if trip is not None else None

    def set_trip_title(self, trip_id: str, title: str) -> None:
        trip_id = self.ensure_trip(trip_id)
        self._map_trip(trip_id, {"title": title})

    def set_trip_status(self, trip_id: str, status: str) -> None:
        trip_id = self.ensure_trip(trip_id)
        self._map_trip(trip_id, {"status": status})

    def update_trip(self, trip_id: str, patch: Mapping[str, Any]) -> None:
        trip_id = self.ensure_trip(trip_id)
        self._map_trip(trip_id, {k: v for k, v in patch.items() if k != "id"})

    def delete_trip(self, trip_id: str) -> None:
        def remove(s: Dict[str, Any]) -> Dict[str, Any]:
            pruned = {
                name: {k: v for k, v in s[name].items() if k != trip_id}
                for name in STATE_FIELDS
                if name != "trips"
            }
            return {**s, **pruned, "trips": [t for t in s["trips"] if t.get("id") != trip_id]}

        self._set_state(remove)
        logger.debug("Deleted trip %s", trip_id)

    def clear_store(self) -> None:
        self._set_state(default_state())

    # ------------------------------------------------------------------
    # messages, snapshot, draft
    # ------------------------------------------------------------------
    def add_message(self, trip_id: Optional[str], role: str, content: str) -> Dict[str, Any]:
        trip_id = self.ensure_trip(trip_id)
        message = {"id": new_id(), "role": role, "content": content, "createdAt": now_iso()}

        def append(s: Dict[str, Any]) -> Dict[str, Any]:
            messages = [*(s["messages"].get(trip_id) or []), message]
            trips = [
                {**t, "lastMessage": content[:LAST_MESSAGE_CHARS], "updatedAt": message["createdAt"]}
                if t.get("id") == trip_id
                else t
                for t in s["trips"]
            ]
            return {**s, "messages": {**s["messages"], trip_id: messages}, "trips": trips}

        self._set_state(append)
        return dict(message)

    def get_trip_messages(self, trip_id: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._state["messages"].get(trip_id) or [])

    def update_snapshot(self, trip_id: Optional[str], patch: Mapping[str, Any]) -> None:
        trip_id = self.ensure_trip(trip_id)

        def merge(s: Dict[str, Any]) -> Dict[str, Any]:
            snapshot = {**(s["snapshots"].get(trip_id) or {}), **patch}
            return {**s, "snapshots": {**s["snapshots"], trip_id: snapshot}}

        self._set_state(merge)

    def get_snapshot(self, trip_id: str) -> Dict[str, Any]:
        return copy.deepcopy(self._state["snapshots"].get(trip_id) or {})

    def apply_trip_patch(self, trip_id: Optional[str], patch: Mapping[str, Any]) -> None:
        trip_id = self.ensure_trip(trip_id)
        patch = dict(patch)

        def merge(s: Dict[str, Any]) -> Dict[str, Any]:
            draft = {
                **(s["tripDrafts"].get(trip_id) or {}),
                **patch,
                "lastPatch": {**patch, "timestamp": now_iso()},
            }
            return {**s, "tripDrafts": {**s["tripDrafts"], trip_id: draft}}

        self._set_state(merge)

    def get_trip_draft(self, trip_id: str) -> Dict[str, Any]:
        return copy.deepcopy(self._state["tripDrafts"].get(trip_id) or {})

    def set_trip_draft_status(self, trip_id: str, status: str) -> None:
        self.apply_trip_patch(trip_id, {"status": status})

    # ------------------------------------------------------------------
    # selections and proposals
    # ------------------------------------------------------------------
    def set_proposal_selection(
        self,
        trip_id: Optional[str],
        *,
        flight: Any = None,
        hotel: Any = None,
        activity: Any = None,
        transfer: Any = None,
    ) -> None:
        """Sparse merge: ``None`` keeps the previous value, ``CLEAR`` empties it."""
        trip_id = self.ensure_trip(trip_id)
        given = {"flight": flight, "hotel": hotel, "activity": activity, "transfer": transfer}

        def merge(s: Dict[str, Any]) -> Dict[str, Any]:
            current = s["selections"].get(trip_id) or {}
            selection = dict(current)
            for name, value in given.items():
                if value is CLEAR:
                    selection[name] = None
                elif value is not None:
                    selection[name] = value
                else:
                    selection[name] = current.get(name)
            return {**s, "selections": {**s["selections"], trip_id: selection}}

        self._set_state(merge)

    def get_proposal_selection(self, trip_id: str) -> Dict[str, Any]:
        selection = self._state["selections"].get(trip_id)
        return copy.deepcopy(selection) if selection else empty_selection()

    def store_proposal(self, trip_id: str, proposal: Dict[str, Any]) -> None:
        """Replace the trip's proposal and mark the trip ready."""

        def write(s: Dict[str, Any]) -> Dict[str, Any]:
            trips = [
                {**t, "status": TripStatus.READY.value} if t.get("id") == trip_id else t
                for t in s["trips"]
            ]
            return {
                **s,
                "proposals": {**s["proposals"], trip_id: proposal},
                "trips": trips,
                "selections": {**s["selections"], trip_id: s["selections"].get(trip_id) or empty_selection()},
            }

        self._set_state(write)

    def get_proposal(self, trip_id: str) -> Optional[Dict[str, Any]]:
        proposal = self._state["proposals"].get(trip_id)
        return copy.deepcopy(proposal) if proposal is not None else None

    def store_enrichment(self, trip_id: str, field: str, items: List[Any]) -> bool:
        """Write partner results onto the trip's selection; dropped if the trip is gone."""
        if self._find_trip(trip_id) is None:
            logger.info("Trip %s no longer exists; discarding %s enrichment", trip_id, field)
            return False

        def write(s: Dict[str, Any]) -> Dict[str, Any]:
            selection = {**(s["selections"].get(trip_id) or empty_selection()), field: items}
            return {**s, "selections": {**s["selections"], trip_id: selection}}

        self._set_state(write)
        return True

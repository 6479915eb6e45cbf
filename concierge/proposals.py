# concierge/proposals.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from concierge.config import LOG_LEVEL
from concierge.store.trips_store import TripsStore, now_iso
from concierge.tools.partners import PartnerSearch

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(handler)
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
logger.propagate = False

ACCOMMODATION_TITLES = {
    "yacht": "Yachts",
    "yachts": "Yachts",
    "airbnb": "Airbnbs",
    "airbnbs": "Airbnbs",
    "resort": "Resorts",
    "resorts": "Resorts",
    "hotel": "Hotels",
    "hotels": "Hotels",
}
EXPERIENCE_ITEMS = ["Guided city highlights", "Local food tour", "Free day for leisure"]
PROPOSAL_IMAGES = [
    "https://images.unsplash.com/photo-1502920917128-1aa500764b5d?auto=format&fit=crop&w=900&q=80",
    "https://images.unsplash.com/photo-1505761671935-60b3a7427bad?auto=format&fit=crop&w=900&q=80",
]
PROPOSAL_NOTES = "Draft generated from conversation and snapshot."


def accommodation_title(kind: Any) -> str:
    return ACCOMMODATION_TITLES.get(str(kind or "").strip().lower(), "Hotels")


def _budget_label(draft: Mapping[str, Any]) -> Optional[str]:
    if not draft.get("budget"):
        return None
    return f"{draft.get('currency') or 'USD'} {draft['budget']}"


def build_sections(draft: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Ordered proposal sections derived from a trip draft."""
    sections: List[Dict[str, Any]] = []

    if draft.get("transportationType") == "Flights":
        check_in, check_out = draft.get("checkIn"), draft.get("checkOut")
        sections.append({
            "title": "Flights",
            "items": [
                f"{draft.get('departureCity') or 'Origin'} → {draft.get('destination') or 'Destination'}",
                f"{check_in} → {check_out}" if check_in and check_out else "Flexible dates",
            ],
        })

    budget = _budget_label(draft)
    sections.append({
        "title": accommodation_title(draft.get("accommodationType")),
        "items": [draft.get("style") or "Curated stays", f"Budget: {budget}" if budget else "Mid-luxury"],
    })

    if draft.get("includeActivities"):
        sections.append({"title": "Activities", "items": ["Loading activities..."]})
    if draft.get("includeTransfers"):
        sections.append({"title": "Transfers", "items": ["Loading transfers..."]})

    sections.append({"title": "Experiences", "items": list(EXPERIENCE_ITEMS)})
    return sections


class ProposalGenerator:
    """Builds proposals for trips in a store and enriches their selections."""

    def __init__(self, store: TripsStore, partners: Optional[PartnerSearch] = None):
        self.store = store
        self.partners = partners or PartnerSearch()

    def build_proposal(self, trip_id: str) -> Dict[str, Any]:
        draft = self.store.get_trip_draft(trip_id)
        trip = self.store.get_trip(trip_id) or {}
        return {
            "tripId": trip_id,
            "title": trip.get("title") or "Trip Proposal",
            "sections": build_sections(draft),
            "priceEstimate": _budget_label(draft) or "On request",
            "images": list(PROPOSAL_IMAGES),
            "notes": PROPOSAL_NOTES,
            "updatedAt": now_iso(),
        }

    async def generate_proposal(self, trip_id: Optional[str] = None) -> Dict[str, Any]:
        """Write a fresh proposal for the trip, then run partner enrichment.

        The proposal is stored and observable before any partner call starts.
        Enrichment failures are logged and leave the selection untouched.
        """
        trip_id = self.store.ensure_trip(trip_id)
        draft = self.store.get_trip_draft(trip_id)
        proposal = self.build_proposal(trip_id)
        self.store.store_proposal(trip_id, proposal)
        logger.info("Generated proposal for trip %s with %d sections", trip_id, len(proposal["sections"]))

        jobs: List[Awaitable[None]] = []
        if draft.get("includeActivities") and draft.get("destination") and draft.get("checkIn") and draft.get("checkOut"):
            jobs.append(self._enrich(trip_id, "activities", self.partners.search_activities, draft))
        if draft.get("includeTransfers") and draft.get("destination") and draft.get("checkIn"):
            jobs.append(self._enrich(trip_id, "transfers", self.partners.search_transfers, draft))
        if jobs:
            await asyncio.gather(*jobs)

        return proposal

    async def _enrich(
        self,
        trip_id: str,
        field: str,
        search: Callable[[Mapping[str, Any]], Awaitable[List[Any]]],
        draft: Mapping[str, Any],
    ) -> None:
        try:
            items = await search(draft)
        except Exception:
            logger.warning("Failed to auto-search %s for trip %s", field, trip_id, exc_info=True)
            return
        if self.store.store_enrichment(trip_id, field, items):
            logger.info("Found %d %s for trip %s", len(items), field, trip_id)

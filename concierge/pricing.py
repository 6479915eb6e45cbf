"""Price estimation for a trip proposal."""
from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from concierge.schemas import PriceBreakdown

DEFAULT_TRAVELERS = 2
DEFAULT_NIGHTS = 5
DEFAULT_FLIGHT_BASE = 1850.0
DEFAULT_HOTEL_NIGHTLY = 420.0
SERVICE_FEES = 180.0

_NUMBER = re.compile(r"\d+(?:\.\d*)?|\.\d+")
_NIGHTS = re.compile(r"(\d+)\s*nights?", re.IGNORECASE)
_ISO_RANGE = re.compile(r"(\d{4}-\d{2}-\d{2})\s*(?:→|–|—|-)\s*(\d{4}-\d{2}-\d{2})")
_RANGE_SPLIT = re.compile(r"\s+(?:→|–|—|-|to)\s+", re.IGNORECASE)


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def parse_money(value: Any) -> Optional[float]:
    """Pull a monetary magnitude out of ``value``.

    Accepts raw numbers or strings such as ``"USD 1,850.50"``. Everything but
    digits and the decimal point is discarded, so currency markers are lost.
    Returns ``None`` when nothing numeric is left.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return _round_half_up(float(value), 2)
    cleaned = re.sub(r"[^0-9.]", "", str(value))
    match = _NUMBER.match(cleaned)
    if not match or not math.isfinite(float(match.group(0))):
        return None
    return _round_half_up(float(match.group(0)), 2)


def format_currency(amount: float) -> str:
    return f"${int(_round_half_up(amount)):,}"


def _parse_travelers(draft: Mapping[str, Any]) -> int:
    # Only an absent key falls through to the next one.
    raw = next((draft[key] for key in ("adults", "travelers", "guests") if draft.get(key) is not None), None)
    if isinstance(raw, bool):
        return DEFAULT_TRAVELERS
    if isinstance(raw, (int, float)):
        if math.isfinite(raw) and raw > 0:
            return int(_round_half_up(raw))
        return DEFAULT_TRAVELERS
    if isinstance(raw, str):
        match = re.search(r"(\d+)", raw)
        if match and int(match.group(1)) > 0:
            return int(match.group(1))
    return DEFAULT_TRAVELERS


def _safe_parse(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).strip())
    except ValueError:
        try:
            return datetime.strptime(str(value).strip(), "%Y-%m-%d")
        except ValueError:
            return None


def _days_between(start: datetime, end: datetime) -> int:
    if (start.tzinfo is None) != (end.tzinfo is None):
        start, end = start.replace(tzinfo=None), end.replace(tzinfo=None)
    return int(_round_half_up((end - start).total_seconds() / 86400))


def _parse_nights(draft: Mapping[str, Any]) -> int:
    check_in, check_out = _safe_parse(draft.get("checkIn")), _safe_parse(draft.get("checkOut"))
    if check_in and check_out:
        return max(1, _days_between(check_in, check_out))

    raw = draft.get("dates")
    if not isinstance(raw, str):
        return DEFAULT_NIGHTS

    match = _NIGHTS.search(raw)
    if match and int(match.group(1)) > 0:
        return int(match.group(1))

    match = _ISO_RANGE.search(raw)
    if match:
        start, end = _safe_parse(match.group(1)), _safe_parse(match.group(2))
        if start and end and _days_between(start, end) > 0:
            return _days_between(start, end)

    parts = _RANGE_SPLIT.split(raw)
    if len(parts) >= 2:
        start, end = _safe_parse(parts[0]), _safe_parse(parts[1])
        if start and end and _days_between(start, end) > 0:
            return _days_between(start, end)

    return DEFAULT_NIGHTS


def _item_price(item: Any) -> Optional[float]:
    if not isinstance(item, Mapping):
        return None
    return parse_money(item.get("price"))


def _sum_items(primary: Any, extras: Any) -> tuple[float, bool]:
    items: List[Any] = [primary]
    if isinstance(extras, list):
        items.extend(extras)
    prices = [_item_price(item) for item in items if item]
    return sum(p for p in prices if p is not None), any(p is not None for p in prices)


def compute_price(
    selection: Mapping[str, Any] | None,
    trip_draft: Mapping[str, Any] | None,
) -> PriceBreakdown:
    """Derive a price breakdown from a selection and a trip draft.

    Pure and deterministic. Missing partner prices fall back to the module
    defaults; unpriced activities and transfers count as zero. Amounts from
    different currencies are added as raw magnitudes.
    """
    selection = selection or {}
    draft = trip_draft or {}

    travelers = _parse_travelers(draft)
    nights = _parse_nights(draft)

    flight_parsed = _item_price(selection.get("flight"))
    hotel_parsed = _item_price(selection.get("hotel"))
    flight_base = flight_parsed if flight_parsed is not None else DEFAULT_FLIGHT_BASE
    hotel_nightly = hotel_parsed if hotel_parsed is not None else DEFAULT_HOTEL_NIGHTLY

    activity_total, has_activity = _sum_items(selection.get("activity"), draft.get("extraActivities"))
    transfer_total, has_transfer = _sum_items(selection.get("transfer"), draft.get("extraTransfers"))

    flight_total = flight_base * travelers
    hotel_total = hotel_nightly * nights
    total = flight_total + hotel_total + activity_total + transfer_total + SERVICE_FEES

    flags: Dict[str, bool] = {
        "has_flight_price": flight_parsed is not None,
        "has_hotel_price": hotel_parsed is not None,
        "has_activity_price": has_activity,
        "has_transfer_price": has_transfer,
    }
    return PriceBreakdown(
        travelers=travelers,
        nights=nights,
        flight_base=flight_base,
        hotel_nightly=hotel_nightly,
        flight_total=flight_total,
        hotel_total=hotel_total,
        activity_total=activity_total,
        transfer_total=transfer_total,
        fees=SERVICE_FEES,
        total=total,
        has_any_price=any(flags.values()),
        **flags,
    )

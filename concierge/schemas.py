from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TripStatus(str, Enum):
    DRAFT = "Draft"
    READY = "Ready"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ------- Request models -------
class CreateTripRequest(_CamelModel):
    title: Optional[str] = None
    status: Optional[str] = None
    departure: Optional[str] = None
    destination: Optional[str] = None
    dates: Optional[str] = None
    travelers: Optional[str] = None
    budget: Optional[str] = None
    style: Optional[str] = None


class MessageRequest(_CamelModel):
    role: str = "user"
    content: str


class TripUpdate(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    title: Optional[str] = None
    # Open string: any status value is stored as given.
    status: Optional[str] = None


SelectionField = Literal["flight", "hotel", "activity", "transfer"]


class SelectionPatch(_CamelModel):
    flight: Optional[Dict[str, Any]] = None
    hotel: Optional[Dict[str, Any]] = None
    activity: Optional[Dict[str, Any]] = None
    transfer: Optional[Dict[str, Any]] = None
    clear: List[SelectionField] = Field(default_factory=list)


class ScopeRequest(_CamelModel):
    identity: str = ""


class PullRequest(_CamelModel):
    email: str


class UserDataPayload(_CamelModel):
    email: str
    trips_state: Optional[Dict[str, Any]] = None


# ------- Response models -------
class Message(_CamelModel):
    id: str
    role: str
    content: str
    created_at: str


class ProposalSection(_CamelModel):
    title: str
    items: List[str] = Field(default_factory=list)


class Proposal(_CamelModel):
    trip_id: str
    title: str
    sections: List[ProposalSection] = Field(default_factory=list)
    price_estimate: str
    images: List[str] = Field(default_factory=list)
    notes: str = ""
    updated_at: str


class PriceBreakdown(_CamelModel):
    travelers: int
    nights: int
    flight_base: float
    hotel_nightly: float
    flight_total: float
    hotel_total: float
    activity_total: float
    transfer_total: float
    fees: float
    total: float
    has_flight_price: bool = False
    has_hotel_price: bool = False
    has_activity_price: bool = False
    has_transfer_price: bool = False
    has_any_price: bool = False

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, EmailStr, Field


class Role(str, Enum):
    passenger = "passenger"
    driver = "driver"


class RequestStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    denied = "denied"


class Decision(str, Enum):
    approve = "approve"
    deny = "deny"


class Outcome(str, Enum):
    approved = "approved"
    denied = "denied"
    auto_denied = "auto_denied"


class RegisteredIdentity(BaseModel):
    kind: Literal["registered"] = "registered"
    user_id: str
    role: Role = Role.passenger


class GuestIdentity(BaseModel):
    kind: Literal["guest"] = "guest"
    contact_email: EmailStr
    contact_name: Optional[str] = None


Identity = Annotated[Union[RegisteredIdentity, GuestIdentity], Field(discriminator="kind")]


class RideCreateRequest(BaseModel):
    origin: str
    destination: str
    departure_time: datetime
    total_seats: int
    # guest contact, ignored for registered callers
    contact_email: Optional[EmailStr] = None
    contact_name: Optional[str] = None


class Ride(BaseModel):
    id: str
    origin: str
    destination: str
    departure_time: datetime
    arrival_time: datetime
    total_seats: int
    available_seats: int
    cost_per_person: float
    owner: Identity
    created_at: datetime
    updated_at: datetime


class SeatRequestCreate(BaseModel):
    ride_id: str
    seats_requested: int = 1
    contact_email: Optional[EmailStr] = None
    contact_name: Optional[str] = None


class SeatRequest(BaseModel):
    id: str
    ride_id: str
    requester: Identity
    seats_requested: int
    status: RequestStatus = RequestStatus.pending
    created_at: datetime
    updated_at: datetime


class DecisionRequest(BaseModel):
    decision: Decision


class DecisionResult(BaseModel):
    outcome: Outcome
    request: SeatRequest
    ride: Ride


class ProfileSummary(BaseModel):
    full_name: str
    rating: float = 0.0
    total_ratings: int = 0


class RideListing(Ride):
    # None for guest-posted rides and drivers without a profile
    driver: Optional[ProfileSummary] = None


class RequestListing(SeatRequest):
    requester_profile: Optional[ProfileSummary] = None


class Trip(BaseModel):
    request: SeatRequest
    ride: Ride


class Locations(BaseModel):
    origins: List[str]
    destinations: List[str]


class Profile(BaseModel):
    user_id: str
    full_name: str = "User"
    role: Role = Role.passenger
    phone: Optional[str] = None
    rating: float = 0.0
    total_ratings: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    role: Optional[Role] = None
    phone: Optional[str] = None


class Event(BaseModel):
    event_id: str
    event_type: str
    payload: dict

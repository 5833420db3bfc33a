"""
Ride inventory: posting rides and reading seat availability.

``available_seats`` is only ever lowered through ``decrement_available`` or
the booking coordinator, both of which go through the storage backend's
per-ride atomic update.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4
from shared.errors import InsufficientSeatsError, NotFoundError, PermissionDeniedError, ValidationError
from shared.estimator import Estimator, MockEstimator
from shared.event_handler import ChangeNotifier, LoggingNotifier, emit
from shared.identity import check_identity, registered_id, require_registered
from shared.models import Locations, Ride, RideCreateRequest, RideListing
from shared.profiles import profile_summaries
from shared.storage import Storage, utcnow

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RideInventory:
    def __init__(self, storage: Storage, notifier: Optional[ChangeNotifier] = None, estimator: Optional[Estimator] = None):
        self.storage = storage
        self.notifier = notifier or LoggingNotifier()
        self.estimator = estimator or MockEstimator()

    async def create_ride(self, details: RideCreateRequest, owner) -> Ride:
        check_identity(owner)
        origin, destination = details.origin.strip(), details.destination.strip()
        if not origin or not destination:
            raise ValidationError("Origin and destination are required")
        if details.total_seats <= 0:
            raise ValidationError("Total seats must be greater than zero")
        departure_time = as_utc(details.departure_time)

        arrival_time, cost_per_person = self.estimator.estimate(origin, destination, departure_time, details.total_seats)
        arrival_time = as_utc(arrival_time)
        if cost_per_person < 0:
            raise ValidationError("Cost per person cannot be negative")
        if arrival_time < departure_time:
            raise ValidationError("Arrival time cannot be before departure time")

        now = utcnow()
        ride = Ride(
            id=str(uuid4()),
            origin=origin,
            destination=destination,
            departure_time=departure_time,
            arrival_time=arrival_time,
            total_seats=details.total_seats,
            available_seats=details.total_seats,
            cost_per_person=cost_per_person,
            owner=owner,
            created_at=now,
            updated_at=now,
        )
        ride = await self.storage.create_ride(ride)
        logger.info(f"Ride {ride.id} posted: {ride.origin} -> {ride.destination} with {ride.total_seats} seats")
        await emit(self.notifier, "ride", ride.id, ride.model_dump(mode="json"))
        return ride

    async def get_ride(self, ride_id: str) -> Ride:
        ride = await self.storage.get_ride(ride_id)
        if ride is None:
            raise NotFoundError(f"Ride {ride_id} not found")
        return ride

    async def decrement_available(self, ride_id: str, n: int) -> Ride:
        if n <= 0:
            raise ValidationError("Seats to take must be greater than zero")
        ride = await self.storage.decrement_available(ride_id, n)
        if ride is None:
            raise InsufficientSeatsError(f"Not enough seats left on ride {ride_id} for {n} passenger(s)")
        await emit(self.notifier, "ride", ride.id, ride.model_dump(mode="json"))
        return ride

    async def list_open_rides(
        self, origin: Optional[str] = None, destination: Optional[str] = None, now: Optional[datetime] = None
    ) -> List[Ride]:
        return await self.storage.list_rides(
            origin=origin,
            destination=destination,
            departing_after=now or utcnow(),
            open_only=True,
        )

    async def open_ride_listings(
        self, origin: Optional[str] = None, destination: Optional[str] = None, now: Optional[datetime] = None
    ) -> List[RideListing]:
        rides = await self.list_open_rides(origin=origin, destination=destination, now=now)
        summaries = await profile_summaries(self.storage, [r.owner for r in rides])
        return [RideListing(**r.model_dump(), driver=summaries.get(registered_id(r.owner))) for r in rides]

    async def rides_for_owner(self, user_id: str, upcoming_only: bool = True, now: Optional[datetime] = None) -> List[Ride]:
        departing_after = (now or utcnow()) if upcoming_only else None
        return await self.storage.list_rides(owner_id=user_id, departing_after=departing_after)

    async def locations(self, now: Optional[datetime] = None) -> Locations:
        rides = await self.list_open_rides(now=now)
        return Locations(
            origins=sorted({r.origin for r in rides}),
            destinations=sorted({r.destination for r in rides}),
        )

    async def delete_ride(self, ride_id: str, caller) -> None:
        user_id = require_registered(caller)
        ride = await self.get_ride(ride_id)
        if registered_id(ride.owner) != user_id:
            raise PermissionDeniedError("Only the driver who posted this ride can delete it")
        if not await self.storage.delete_ride(ride_id):
            raise NotFoundError(f"Ride {ride_id} not found")
        logger.info(f"Ride {ride_id} deleted by {user_id}")
        await emit(self.notifier, "ride", ride_id, {"id": ride_id, "deleted": True})

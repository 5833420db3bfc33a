import logging
from datetime import datetime
from typing import List, Optional
from uuid import uuid4
from shared.errors import InvalidTransitionError, NotFoundError, ValidationError
from shared.event_handler import ChangeNotifier, LoggingNotifier, emit
from shared.identity import check_identity, registered_id
from shared.models import Outcome, RequestListing, RequestStatus, SeatRequest, Trip
from shared.profiles import profile_summaries
from shared.storage import Storage, utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    RequestStatus.pending: {RequestStatus.approved, RequestStatus.denied},
}


class RequestLedger:
    def __init__(self, storage: Storage, notifier: Optional[ChangeNotifier] = None):
        self.storage = storage
        self.notifier = notifier or LoggingNotifier()

    async def create_request(self, ride_id: str, requester, seats: int) -> SeatRequest:
        check_identity(requester)
        if seats <= 0:
            raise ValidationError("Seats requested must be greater than zero")
        ride = await self.storage.get_ride(ride_id)
        if ride is None:
            raise NotFoundError(f"Ride {ride_id} not found")
        if seats > ride.total_seats:
            raise ValidationError(f"This ride only has {ride.total_seats} seat(s)")

        now = utcnow()
        request = SeatRequest(
            id=str(uuid4()),
            ride_id=ride_id,
            requester=requester,
            seats_requested=seats,
            status=RequestStatus.pending,
            created_at=now,
            updated_at=now,
        )
        request = await self.storage.create_request(request)
        logger.info(f"Request {request.id} for {seats} seat(s) on ride {ride_id}")
        await emit(self.notifier, "request", request.id, request.model_dump(mode="json"))
        return request

    async def get_request(self, request_id: str) -> SeatRequest:
        request = await self.storage.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found")
        return request

    async def set_status(self, request_id: str, new_status: RequestStatus) -> SeatRequest:
        new_status = RequestStatus(new_status)
        current = await self.get_request(request_id)
        if new_status not in ALLOWED_TRANSITIONS.get(current.status, set()):
            raise InvalidTransitionError(
                f"Cannot change request from {current.status.value} to {new_status.value}"
            )
        if new_status == RequestStatus.approved:
            # approval takes the seats in the same unit, or auto-denies
            outcome, updated, ride = await self.storage.approve_request(request_id)
            logger.info(f"Request {request_id} {outcome.value} via ledger")
            await emit(self.notifier, "request", updated.id, updated.model_dump(mode="json"))
            if outcome == Outcome.approved:
                await emit(self.notifier, "ride", ride.id, ride.model_dump(mode="json"))
            return updated
        updated = await self.storage.set_request_status(request_id, new_status)
        if updated is None:
            # resolved by someone else since we read it
            latest = await self.get_request(request_id)
            raise InvalidTransitionError(f"Request is already {latest.status.value}")
        await emit(self.notifier, "request", updated.id, updated.model_dump(mode="json"))
        return updated

    async def requests_for_ride(self, ride_id: str) -> List[SeatRequest]:
        return await self.storage.list_requests(ride_id=ride_id)

    async def request_listings(self, ride_id: str) -> List[RequestListing]:
        """Requests on a ride with each registered requester's display details, for the driver's dashboard."""
        requests = await self.requests_for_ride(ride_id)
        summaries = await profile_summaries(self.storage, [r.requester for r in requests])
        return [
            RequestListing(**r.model_dump(), requester_profile=summaries.get(registered_id(r.requester)))
            for r in requests
        ]

    async def requests_for_requester(self, user_id: str) -> List[SeatRequest]:
        return await self.storage.list_requests(requester_id=user_id)

    async def _approved_trips(self, user_id: str) -> List[Trip]:
        trips = []
        for request in await self.storage.list_requests(requester_id=user_id, status=RequestStatus.approved):
            ride = await self.storage.get_ride(request.ride_id)
            if ride is not None:
                trips.append(Trip(request=request, ride=ride))
        return trips

    async def upcoming_trips(self, user_id: str, now: Optional[datetime] = None) -> List[Trip]:
        now = now or utcnow()
        trips = [t for t in await self._approved_trips(user_id) if t.ride.departure_time > now]
        return sorted(trips, key=lambda t: t.ride.departure_time)

    async def ride_history(self, user_id: str, now: Optional[datetime] = None) -> List[Trip]:
        now = now or utcnow()
        trips = [t for t in await self._approved_trips(user_id) if t.ride.departure_time <= now]
        return sorted(trips, key=lambda t: t.ride.departure_time, reverse=True)

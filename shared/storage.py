"""
Storage backends for rides, seat requests and profiles.

Every backend must make ``approve_request`` a single atomic unit per ride:
the pending check, the conditional seat decrement and the status write
either all commit or none do. ``MemoryStorage`` does this with one
``asyncio.Lock`` per ride; ``PostgresStorage`` (pg_storage.py) with a
conditional UPDATE inside a transaction.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from shared.errors import (
    DuplicateRequestError,
    InvalidTransitionError,
    NotFoundError,
    RetryableError,
)
from shared.identity import registered_id
from shared.models import Outcome, Profile, RequestStatus, Ride, SeatRequest

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Storage:
    async def connect(self):
        pass

    async def disconnect(self):
        pass

    async def create_ride(self, ride: Ride) -> Ride:
        raise NotImplementedError

    async def get_ride(self, ride_id: str) -> Optional[Ride]:
        raise NotImplementedError

    async def list_rides(
        self,
        origin: Optional[str] = None,
        destination: Optional[str] = None,
        owner_id: Optional[str] = None,
        departing_after: Optional[datetime] = None,
        open_only: bool = False,
    ) -> List[Ride]:
        """Rides matching every given filter, ordered by ascending departure_time."""
        raise NotImplementedError

    async def delete_ride(self, ride_id: str) -> bool:
        raise NotImplementedError

    async def decrement_available(self, ride_id: str, n: int, timeout: Optional[float] = None) -> Optional[Ride]:
        """Subtract n seats if at least n remain. Returns None and changes nothing otherwise."""
        raise NotImplementedError

    async def create_request(self, request: SeatRequest) -> SeatRequest:
        raise NotImplementedError

    async def get_request(self, request_id: str) -> Optional[SeatRequest]:
        raise NotImplementedError

    async def list_requests(
        self,
        ride_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        status: Optional[RequestStatus] = None,
    ) -> List[SeatRequest]:
        """Requests matching every given filter, newest first."""
        raise NotImplementedError

    async def set_request_status(
        self, request_id: str, status: RequestStatus, timeout: Optional[float] = None
    ) -> Optional[SeatRequest]:
        """Write status only while the stored status is pending. Returns None if it was not."""
        raise NotImplementedError

    async def approve_request(self, request_id: str, timeout: Optional[float] = None) -> Tuple[Outcome, SeatRequest, Ride]:
        raise NotImplementedError

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        raise NotImplementedError

    async def upsert_profile(self, profile: Profile) -> Profile:
        raise NotImplementedError


class MemoryStorage(Storage):
    """
    Process-local storage for tests and single-process development.
    State is lost on restart and is not shared between services.
    """

    def __init__(self):
        self.rides: Dict[str, Ride] = {}
        self.requests: Dict[str, SeatRequest] = {}
        self.profiles: Dict[str, Profile] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def ride_lock(self, ride_id: str, timeout: Optional[float] = None):
        lock = self._locks.setdefault(ride_id, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out waiting for lock on ride {ride_id}")
            raise RetryableError()
        try:
            yield
        finally:
            lock.release()

    async def create_ride(self, ride: Ride) -> Ride:
        self.rides[ride.id] = ride.model_copy()
        return ride.model_copy()

    async def get_ride(self, ride_id: str) -> Optional[Ride]:
        ride = self.rides.get(ride_id)
        return ride.model_copy() if ride else None

    async def list_rides(self, origin=None, destination=None, owner_id=None, departing_after=None, open_only=False):
        result = []
        for ride in self.rides.values():
            if origin is not None and ride.origin != origin:
                continue
            if destination is not None and ride.destination != destination:
                continue
            if owner_id is not None and registered_id(ride.owner) != owner_id:
                continue
            if departing_after is not None and ride.departure_time <= departing_after:
                continue
            if open_only and ride.available_seats <= 0:
                continue
            result.append(ride.model_copy())
        return sorted(result, key=lambda r: r.departure_time)

    async def delete_ride(self, ride_id: str) -> bool:
        async with self.ride_lock(ride_id):
            if self.rides.pop(ride_id, None) is None:
                return False
            for request_id in [r.id for r in self.requests.values() if r.ride_id == ride_id]:
                del self.requests[request_id]
        self._locks.pop(ride_id, None)
        return True

    async def decrement_available(self, ride_id, n, timeout=None):
        async with self.ride_lock(ride_id, timeout):
            ride = self.rides.get(ride_id)
            if ride is None:
                raise NotFoundError(f"Ride {ride_id} not found")
            if ride.available_seats < n:
                return None
            ride.available_seats -= n
            ride.updated_at = utcnow()
            return ride.model_copy()

    async def create_request(self, request: SeatRequest) -> SeatRequest:
        if request.ride_id not in self.rides:
            raise NotFoundError(f"Ride {request.ride_id} not found")
        requester_id = registered_id(request.requester)
        if requester_id is not None:
            for existing in self.requests.values():
                if existing.ride_id == request.ride_id and registered_id(existing.requester) == requester_id:
                    raise DuplicateRequestError("You have already requested a seat on this ride")
        self.requests[request.id] = request.model_copy()
        return request.model_copy()

    async def get_request(self, request_id: str) -> Optional[SeatRequest]:
        request = self.requests.get(request_id)
        return request.model_copy() if request else None

    async def list_requests(self, ride_id=None, requester_id=None, status=None):
        result = []
        for request in self.requests.values():
            if ride_id is not None and request.ride_id != ride_id:
                continue
            if requester_id is not None and registered_id(request.requester) != requester_id:
                continue
            if status is not None and request.status != status:
                continue
            result.append(request.model_copy())
        return sorted(result, key=lambda r: r.created_at, reverse=True)

    def _pending_request(self, request_id: str) -> SeatRequest:
        request = self.requests.get(request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found")
        return request

    async def set_request_status(self, request_id, status, timeout=None):
        ride_id = self._pending_request(request_id).ride_id
        async with self.ride_lock(ride_id, timeout):
            request = self._pending_request(request_id)
            if request.status != RequestStatus.pending:
                return None
            request.status = status
            request.updated_at = utcnow()
            return request.model_copy()

    async def approve_request(self, request_id, timeout=None):
        ride_id = self._pending_request(request_id).ride_id
        async with self.ride_lock(ride_id, timeout):
            request = self._pending_request(request_id)
            if request.status != RequestStatus.pending:
                raise InvalidTransitionError(f"Request is already {request.status.value}")
            ride = self.rides[ride_id]
            now = utcnow()
            if ride.available_seats < request.seats_requested:
                outcome = Outcome.auto_denied
                request.status = RequestStatus.denied
            else:
                outcome = Outcome.approved
                ride.available_seats -= request.seats_requested
                ride.updated_at = now
                request.status = RequestStatus.approved
            request.updated_at = now
            return outcome, request.model_copy(), ride.model_copy()

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        profile = self.profiles.get(user_id)
        return profile.model_copy() if profile else None

    async def upsert_profile(self, profile: Profile) -> Profile:
        now = utcnow()
        existing = self.profiles.get(profile.user_id)
        created_at = existing.created_at if existing else now
        stored = profile.model_copy(update={"created_at": created_at, "updated_at": now})
        if existing is not None:
            # keep stored phone and rating fields when not supplied
            stored.phone = profile.phone if profile.phone is not None else existing.phone
            stored.rating = existing.rating
            stored.total_ratings = existing.total_ratings
        self.profiles[profile.user_id] = stored
        return stored.model_copy()

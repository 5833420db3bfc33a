import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID
from asyncpg.exceptions import (
    DeadlockDetectedError,
    ForeignKeyViolationError,
    LockNotAvailableError,
    SerializationError,
    UniqueViolationError,
)
from shared.database import Database
from shared.errors import (
    DuplicateRequestError,
    InvalidTransitionError,
    NotFoundError,
    RetryableError,
)
from shared.models import (
    GuestIdentity,
    Outcome,
    Profile,
    RegisteredIdentity,
    RequestStatus,
    Ride,
    SeatRequest,
)
from shared.storage import Storage

logger = logging.getLogger(__name__)

CONTENTION_ERRORS = (LockNotAvailableError, DeadlockDetectedError, SerializationError)

DECREMENT_SQL = """
    UPDATE rides
    SET available_seats = available_seats - $2, updated_at = now()
    WHERE id = $1 AND available_seats >= $2
    RETURNING *
"""


def _as_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _identity_from_row(user_id, role, email, name):
    if user_id is not None:
        return RegisteredIdentity(user_id=user_id, role=role or "passenger")
    return GuestIdentity(contact_email=email, contact_name=name)


def _identity_columns(identity):
    if isinstance(identity, RegisteredIdentity):
        return identity.user_id, identity.role.value, None, None
    return None, None, identity.contact_email, identity.contact_name


def _ride_from_row(row) -> Ride:
    return Ride(
        id=str(row["id"]),
        origin=row["origin"],
        destination=row["destination"],
        departure_time=row["departure_time"],
        arrival_time=row["arrival_time"],
        total_seats=row["total_seats"],
        available_seats=row["available_seats"],
        cost_per_person=float(row["cost_per_person"]),
        owner=_identity_from_row(row["owner_id"], row["owner_role"], row["contact_email"], row["contact_name"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _request_from_row(row) -> SeatRequest:
    return SeatRequest(
        id=str(row["id"]),
        ride_id=str(row["ride_id"]),
        requester=_identity_from_row(
            row["requester_id"], row["requester_role"], row["contact_email"], row["contact_name"]
        ),
        seats_requested=row["seats_requested"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresStorage(Storage):
    def __init__(self, db: Database):
        self.db = db

    async def connect(self):
        await self.db.connect()
        await self.db.ensure_schema()

    async def disconnect(self):
        await self.db.disconnect()

    async def create_ride(self, ride: Ride) -> Ride:
        sql = """
            INSERT INTO rides (id, owner_id, owner_role, contact_email, contact_name, origin, destination,
                               departure_time, arrival_time, total_seats, available_seats, cost_per_person,
                               created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            RETURNING *
        """
        row = await self.db.fetch_one(
            sql,
            _as_uuid(ride.id),
            *_identity_columns(ride.owner),
            ride.origin,
            ride.destination,
            ride.departure_time,
            ride.arrival_time,
            ride.total_seats,
            ride.available_seats,
            Decimal(str(ride.cost_per_person)),
            ride.created_at,
            ride.updated_at,
        )
        return _ride_from_row(row)

    async def get_ride(self, ride_id: str) -> Optional[Ride]:
        uid = _as_uuid(ride_id)
        if uid is None:
            return None
        row = await self.db.fetch_one("SELECT * FROM rides WHERE id = $1", uid)
        return _ride_from_row(row) if row else None

    async def list_rides(self, origin=None, destination=None, owner_id=None, departing_after=None, open_only=False):
        clauses, params = [], []
        for column, value in (("origin", origin), ("destination", destination), ("owner_id", owner_id)):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        if departing_after is not None:
            params.append(departing_after)
            clauses.append(f"departure_time > ${len(params)}")
        if open_only:
            clauses.append("available_seats > 0")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.db.execute_query(f"SELECT * FROM rides {where} ORDER BY departure_time ASC", *params)
        return [_ride_from_row(row) for row in rows]

    async def delete_ride(self, ride_id: str) -> bool:
        uid = _as_uuid(ride_id)
        if uid is None:
            return False
        rows = await self.db.execute_query("DELETE FROM rides WHERE id = $1 RETURNING id", uid)
        return bool(rows)

    async def decrement_available(self, ride_id, n, timeout=None):
        uid = _as_uuid(ride_id)
        if uid is None:
            raise NotFoundError(f"Ride {ride_id} not found")
        try:
            async with self.db.transaction() as conn:
                await self._set_lock_timeout(conn, timeout)
                row = await conn.fetchrow(DECREMENT_SQL, uid, n)
                if row is None:
                    exists = await conn.fetchval("SELECT 1 FROM rides WHERE id = $1", uid)
                    if not exists:
                        raise NotFoundError(f"Ride {ride_id} not found")
                    return None
        except CONTENTION_ERRORS as e:
            logger.warning(f"Contention decrementing ride {ride_id}: {e}")
            raise RetryableError() from e
        return _ride_from_row(row)

    async def create_request(self, request: SeatRequest) -> SeatRequest:
        ride_uid = _as_uuid(request.ride_id)
        if ride_uid is None:
            raise NotFoundError(f"Ride {request.ride_id} not found")
        sql = """
            INSERT INTO requests (id, ride_id, requester_id, requester_role, contact_email, contact_name,
                                  seats_requested, status, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING *
        """
        try:
            row = await self.db.fetch_one(
                sql,
                _as_uuid(request.id),
                ride_uid,
                *_identity_columns(request.requester),
                request.seats_requested,
                request.status.value,
                request.created_at,
                request.updated_at,
            )
        except UniqueViolationError as e:
            raise DuplicateRequestError("You have already requested a seat on this ride") from e
        except ForeignKeyViolationError as e:
            raise NotFoundError(f"Ride {request.ride_id} not found") from e
        return _request_from_row(row)

    async def get_request(self, request_id: str) -> Optional[SeatRequest]:
        uid = _as_uuid(request_id)
        if uid is None:
            return None
        row = await self.db.fetch_one("SELECT * FROM requests WHERE id = $1", uid)
        return _request_from_row(row) if row else None

    async def list_requests(self, ride_id=None, requester_id=None, status=None):
        clauses, params = [], []
        if ride_id is not None:
            uid = _as_uuid(ride_id)
            if uid is None:
                return []
            params.append(uid)
            clauses.append(f"ride_id = ${len(params)}")
        if requester_id is not None:
            params.append(requester_id)
            clauses.append(f"requester_id = ${len(params)}")
        if status is not None:
            params.append(RequestStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.db.execute_query(f"SELECT * FROM requests {where} ORDER BY created_at DESC", *params)
        return [_request_from_row(row) for row in rows]

    async def set_request_status(self, request_id, status, timeout=None):
        uid = _as_uuid(request_id)
        if uid is None:
            raise NotFoundError(f"Request {request_id} not found")
        sql = """
            UPDATE requests SET status = $2, updated_at = now()
            WHERE id = $1 AND status = 'pending'
            RETURNING *
        """
        try:
            async with self.db.transaction() as conn:
                await self._set_lock_timeout(conn, timeout)
                row = await conn.fetchrow(sql, uid, RequestStatus(status).value)
                if row is None:
                    exists = await conn.fetchval("SELECT 1 FROM requests WHERE id = $1", uid)
                    if not exists:
                        raise NotFoundError(f"Request {request_id} not found")
                    return None
        except CONTENTION_ERRORS as e:
            logger.warning(f"Contention updating request {request_id}: {e}")
            raise RetryableError() from e
        return _request_from_row(row)

    async def approve_request(self, request_id, timeout=None):
        uid = _as_uuid(request_id)
        if uid is None:
            raise NotFoundError(f"Request {request_id} not found")
        try:
            async with self.db.transaction() as conn:
                await self._set_lock_timeout(conn, timeout)
                row = await conn.fetchrow("SELECT * FROM requests WHERE id = $1 FOR UPDATE", uid)
                if row is None:
                    raise NotFoundError(f"Request {request_id} not found")
                if row["status"] != RequestStatus.pending.value:
                    raise InvalidTransitionError(f"Request is already {row['status']}")
                ride_row = await conn.fetchrow(DECREMENT_SQL, row["ride_id"], row["seats_requested"])
                if ride_row is None:
                    outcome, status = Outcome.auto_denied, RequestStatus.denied
                    ride_row = await conn.fetchrow("SELECT * FROM rides WHERE id = $1", row["ride_id"])
                else:
                    outcome, status = Outcome.approved, RequestStatus.approved
                request_row = await conn.fetchrow(
                    "UPDATE requests SET status = $2, updated_at = now() WHERE id = $1 RETURNING *",
                    uid,
                    status.value,
                )
        except CONTENTION_ERRORS as e:
            logger.warning(f"Contention approving request {request_id}: {e}")
            raise RetryableError() from e
        return outcome, _request_from_row(request_row), _ride_from_row(ride_row)

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        row = await self.db.fetch_one("SELECT * FROM profiles WHERE user_id = $1", user_id)
        return Profile(**row) if row else None

    async def upsert_profile(self, profile: Profile) -> Profile:
        sql = """
            INSERT INTO profiles (user_id, full_name, role, phone)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (user_id) DO UPDATE SET
                full_name = EXCLUDED.full_name,
                role = EXCLUDED.role,
                phone = COALESCE(EXCLUDED.phone, profiles.phone),
                updated_at = now()
            RETURNING *
        """
        row = await self.db.fetch_one(sql, profile.user_id, profile.full_name, profile.role.value, profile.phone)
        return Profile(**row)

    @staticmethod
    async def _set_lock_timeout(conn, timeout: Optional[float]):
        if timeout is not None:
            # SET does not take bind parameters
            await conn.execute(f"SET LOCAL lock_timeout = '{int(timeout * 1000)}ms'")

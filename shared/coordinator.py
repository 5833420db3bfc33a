"""
Booking coordinator: the ride owner's approve/deny decision on a seat request.

An approval re-reads the ride's availability at decision time and applies the
status change and the seat decrement as one atomic unit inside the storage
backend. Concurrent decisions on one ride therefore behave as if run one after
another; if too few seats remain, the approval resolves as an automatic denial
instead of an error.
"""

import asyncio
import logging
from typing import Optional
from shared import config
from shared.errors import InvalidTransitionError, NotFoundError, PermissionDeniedError, RetryableError
from shared.event_handler import ChangeNotifier, LoggingNotifier, emit
from shared.identity import registered_id, require_registered
from shared.models import Decision, DecisionResult, Outcome, RequestStatus
from shared.storage import Storage

logger = logging.getLogger(__name__)


class BookingCoordinator:
    def __init__(
        self,
        storage: Storage,
        notifier: Optional[ChangeNotifier] = None,
        lock_timeout: float = config.DECIDE_LOCK_TIMEOUT,
        max_attempts: int = config.DECIDE_MAX_ATTEMPTS,
        retry_backoff: float = config.DECIDE_RETRY_BACKOFF,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.storage = storage
        self.notifier = notifier or LoggingNotifier()
        self.lock_timeout = lock_timeout
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff

    async def decide(self, request_id: str, decision: Decision, caller) -> DecisionResult:
        decision = Decision(decision)
        user_id = require_registered(caller)

        request = await self.storage.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found")
        ride = await self.storage.get_ride(request.ride_id)
        if ride is None:
            raise NotFoundError(f"Ride {request.ride_id} not found")
        if registered_id(ride.owner) != user_id:
            raise PermissionDeniedError("Only the driver who posted this ride can decide on its requests")
        if request.status != RequestStatus.pending:
            raise InvalidTransitionError(f"Request is already {request.status.value}")

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self._apply(request_id, decision)
                break
            except RetryableError:
                if attempt == self.max_attempts:
                    logger.error(f"Giving up on request {request_id} after {attempt} attempts")
                    raise
                delay = self.retry_backoff * 2 ** (attempt - 1)
                logger.warning(f"Contention deciding request {request_id}, retry {attempt} in {delay:.2f}s")
                await asyncio.sleep(delay)

        if result.outcome == Outcome.auto_denied:
            logger.warning(
                f"Request {request_id} auto-denied: {result.request.seats_requested} seat(s) requested, "
                f"{result.ride.available_seats} available"
            )
        else:
            logger.info(f"Request {request_id} {result.outcome.value} by {user_id}")

        await emit(self.notifier, "request", result.request.id, result.request.model_dump(mode="json"))
        if result.outcome == Outcome.approved:
            await emit(self.notifier, "ride", result.ride.id, result.ride.model_dump(mode="json"))
        return result

    async def _apply(self, request_id: str, decision: Decision) -> DecisionResult:
        if decision == Decision.deny:
            request = await self.storage.set_request_status(request_id, RequestStatus.denied, timeout=self.lock_timeout)
            if request is None:
                latest = await self.storage.get_request(request_id)
                if latest is None:
                    raise NotFoundError(f"Request {request_id} not found")
                raise InvalidTransitionError(f"Request is already {latest.status.value}")
            ride = await self.storage.get_ride(request.ride_id)
            if ride is None:
                raise NotFoundError(f"Ride {request.ride_id} not found")
            return DecisionResult(outcome=Outcome.denied, request=request, ride=ride)

        outcome, request, ride = await self.storage.approve_request(request_id, timeout=self.lock_timeout)
        return DecisionResult(outcome=outcome, request=request, ride=ride)

import sys
import logging
import uvicorn
from typing import List, Optional
from fastapi import Depends, FastAPI
from shared import config
from shared.errors import PermissionDeniedError, install_error_handlers
from shared.identity import get_caller, registered_id, require_registered, resolve_identity
from shared.models import (
    DecisionRequest,
    DecisionResult,
    RegisteredIdentity,
    RequestListing,
    SeatRequest,
    SeatRequestCreate,
    Trip,
)
from shared.runtime import build_components

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Booking Service")
install_error_handlers(app)
components = build_components("BookingService")


async def _require_ride_owner(ride_id: str, user_id: str):
    ride = await components.inventory.get_ride(ride_id)
    if registered_id(ride.owner) != user_id:
        raise PermissionDeniedError("Only the driver who posted this ride can see its requests")
    return ride


@app.post("/requests", response_model=SeatRequest, status_code=201)
async def create_request(request: SeatRequestCreate, caller: Optional[RegisteredIdentity] = Depends(get_caller)):
    requester = resolve_identity(caller, request.contact_email, request.contact_name)
    return await components.ledger.create_request(request.ride_id, requester, request.seats_requested)


@app.get("/requests/mine", response_model=List[SeatRequest])
async def list_my_requests(caller: Optional[RegisteredIdentity] = Depends(get_caller)):
    user_id = require_registered(caller)
    return await components.ledger.requests_for_requester(user_id)


@app.get("/requests/{request_id}", response_model=SeatRequest)
async def get_request(request_id: str, caller: Optional[RegisteredIdentity] = Depends(get_caller)):
    user_id = require_registered(caller)
    seat_request = await components.ledger.get_request(request_id)
    if registered_id(seat_request.requester) != user_id:
        await _require_ride_owner(seat_request.ride_id, user_id)
    return seat_request


@app.get("/rides/{ride_id}/requests", response_model=List[RequestListing])
async def list_ride_requests(ride_id: str, caller: Optional[RegisteredIdentity] = Depends(get_caller)):
    user_id = require_registered(caller)
    await _require_ride_owner(ride_id, user_id)
    return await components.ledger.request_listings(ride_id)


@app.post("/requests/{request_id}/decision", response_model=DecisionResult)
async def decide(request_id: str, body: DecisionRequest, caller: Optional[RegisteredIdentity] = Depends(get_caller)):
    return await components.coordinator.decide(request_id, body.decision, caller)


@app.get("/trips/upcoming", response_model=List[Trip])
async def upcoming_trips(caller: Optional[RegisteredIdentity] = Depends(get_caller)):
    user_id = require_registered(caller)
    return await components.ledger.upcoming_trips(user_id)


@app.get("/trips/history", response_model=List[Trip])
async def ride_history(caller: Optional[RegisteredIdentity] = Depends(get_caller)):
    user_id = require_registered(caller)
    return await components.ledger.ride_history(user_id)


@app.on_event("startup")
async def startup_event():
    await components.startup()


@app.on_event("shutdown")
async def shutdown_event():
    await components.shutdown()


if __name__ == "__main__":
    host, port = sys.argv[1].split(":")
    uvicorn.run("service:app", host=host, port=int(port), reload=True, log_level="debug")

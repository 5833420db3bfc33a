import sys
import logging
import uvicorn
from typing import List, Optional
from fastapi import Depends, FastAPI, Response
from shared import config
from shared.errors import install_error_handlers
from shared.identity import get_caller, require_registered, resolve_identity
from shared.models import Locations, RegisteredIdentity, Ride, RideCreateRequest, RideListing
from shared.runtime import build_components

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ride Service")
install_error_handlers(app)
components = build_components("RideService")


@app.get("/rides", response_model=List[RideListing])
async def list_open_rides(origin: Optional[str] = None, destination: Optional[str] = None):
    return await components.inventory.open_ride_listings(origin=origin, destination=destination)


@app.get("/rides/locations", response_model=Locations)
async def get_locations():
    return await components.inventory.locations()


@app.get("/rides/mine", response_model=List[Ride])
async def list_my_rides(include_past: bool = False, caller: Optional[RegisteredIdentity] = Depends(get_caller)):
    user_id = require_registered(caller)
    return await components.inventory.rides_for_owner(user_id, upcoming_only=not include_past)


@app.get("/rides/{ride_id}", response_model=Ride)
async def get_ride(ride_id: str):
    return await components.inventory.get_ride(ride_id)


@app.post("/rides", response_model=Ride, status_code=201)
async def create_ride(request: RideCreateRequest, caller: Optional[RegisteredIdentity] = Depends(get_caller)):
    owner = resolve_identity(caller, request.contact_email, request.contact_name)
    return await components.inventory.create_ride(request, owner)


@app.delete("/rides/{ride_id}", status_code=204)
async def delete_ride(ride_id: str, caller: Optional[RegisteredIdentity] = Depends(get_caller)):
    await components.inventory.delete_ride(ride_id, caller)
    return Response(status_code=204)


@app.on_event("startup")
async def startup_event():
    await components.startup()


@app.on_event("shutdown")
async def shutdown_event():
    await components.shutdown()


if __name__ == "__main__":
    host, port = sys.argv[1].split(":")
    uvicorn.run("service:app", host=host, port=int(port), reload=True, log_level="debug")

import sys
import logging
import uvicorn
from typing import Optional
from fastapi import Depends, FastAPI
from shared import config
from shared.errors import install_error_handlers
from shared.identity import get_caller
from shared.models import Profile, ProfileUpdate, RegisteredIdentity
from shared.runtime import build_components

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Profile Service")
install_error_handlers(app)
components = build_components("ProfileService")


@app.get("/profiles/{user_id}", response_model=Profile)
async def get_profile(user_id: str):
    return await components.profiles.get_profile(user_id)


@app.put("/profiles/me", response_model=Profile)
async def save_my_profile(update: ProfileUpdate, caller: Optional[RegisteredIdentity] = Depends(get_caller)):
    return await components.profiles.save_own_profile(caller, update)


@app.on_event("startup")
async def startup_event():
    await components.startup()


@app.on_event("shutdown")
async def shutdown_event():
    await components.shutdown()


if __name__ == "__main__":
    host, port = sys.argv[1].split(":")
    uvicorn.run("service:app", host=host, port=int(port), reload=True, log_level="debug")

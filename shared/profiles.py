import logging
from typing import Dict, Iterable
from shared.errors import NotFoundError, ValidationError
from shared.identity import registered_id, require_registered
from shared.models import Profile, ProfileSummary, ProfileUpdate, Role
from shared.storage import Storage

logger = logging.getLogger(__name__)


async def profile_summaries(storage: Storage, identities: Iterable) -> Dict[str, ProfileSummary]:
    """Display details keyed by user id. Guests and users without a profile are left out."""
    summaries = {}
    for user_id in {registered_id(i) for i in identities} - {None}:
        profile = await storage.get_profile(user_id)
        if profile is not None:
            summaries[user_id] = ProfileSummary(
                full_name=profile.full_name, rating=profile.rating, total_ratings=profile.total_ratings
            )
    return summaries


class ProfileDirectory:
    """Display details for registered users. Callers may only write their own profile."""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def get_profile(self, user_id: str) -> Profile:
        profile = await self.storage.get_profile(user_id)
        if profile is None:
            raise NotFoundError(f"Profile {user_id} not found")
        return profile

    async def save_own_profile(self, caller, update: ProfileUpdate) -> Profile:
        user_id = require_registered(caller)
        existing = await self.storage.get_profile(user_id)

        # omitted fields keep their stored values
        if update.full_name is not None:
            full_name = update.full_name.strip() or "User"
        else:
            full_name = existing.full_name if existing else "User"
        if len(full_name) > 100:
            raise ValidationError("Full name must be at most 100 characters")
        role = update.role or (existing.role if existing else Role.passenger)

        profile = await self.storage.upsert_profile(
            Profile(user_id=user_id, full_name=full_name, role=role, phone=update.phone)
        )
        logger.info(f"Profile saved for {user_id}")
        return profile

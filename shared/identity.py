from typing import Optional
import pydantic
from fastapi import Header
from shared.errors import PermissionDeniedError, ValidationError
from shared.models import GuestIdentity, RegisteredIdentity, Role


def registered_id(identity) -> Optional[str]:
    if isinstance(identity, RegisteredIdentity):
        return identity.user_id
    return None


def check_identity(identity):
    if isinstance(identity, GuestIdentity):
        if not identity.contact_email:
            raise ValidationError("Guests must provide a valid contact email")
    elif not identity.user_id:
        raise ValidationError("Registered identity requires a user id")
    return identity


def require_registered(identity) -> str:
    user_id = registered_id(identity)
    if user_id is None:
        raise PermissionDeniedError("Sign in to perform this action")
    return user_id


async def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Role = Header(Role.passenger),
) -> Optional[RegisteredIdentity]:
    """
    Identity as supplied by the upstream identity provider.
    None means the caller is a guest; guest contact details travel in the body.
    """
    if not x_user_id:
        return None
    return RegisteredIdentity(user_id=x_user_id, role=x_user_role)


def resolve_identity(caller: Optional[RegisteredIdentity], contact_email: Optional[str], contact_name: Optional[str]):
    if caller is not None:
        return caller
    try:
        guest = GuestIdentity(contact_email=(contact_email or "").strip(), contact_name=contact_name or None)
    except pydantic.ValidationError as e:
        raise ValidationError("Guests must provide a valid contact email") from e
    return check_identity(guest)

"""
Identity provider used by the chat core.

The user directory and token issuance live outside the chat subsystem; the
core only needs to turn a bearer credential into an identity, to look up a
counterpart when opening a session and to list the doctors a patient can contact.
"""
from typing import List, Optional, Protocol

from beanie import PydanticObjectId as OID
from pydantic import BaseModel, ConfigDict
from pymongo import ASCENDING

from clinic_chat.constants import Role
from clinic_chat.errors import AuthError, NotFoundError, transient_store_errors
from clinic_chat.utils.logger import get_logger

logger = get_logger("identity")


class Identity(BaseModel):
    """Authenticated caller."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role
    display_name: str


class UserProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role
    display_name: str
    specialization: Optional[str] = None
    image_url: Optional[str] = None


def _profile(user) -> UserProfile:
    return UserProfile(
        user_id=str(user.id),
        role=user.role,
        display_name=user.name or user.phone,
        specialization=user.specialization,
        image_url=user.imageUrl,
    )


class IdentityProvider(Protocol):
    async def resolve_identity(self, credential: str) -> Identity:
        ...

    async def lookup_user(self, user_id: str, role: Role) -> UserProfile:
        ...

    async def list_doctors(self) -> List[UserProfile]:
        ...


class JWTIdentityProvider:
    """Validates clinic access tokens and reads display data from the users collection."""

    async def _get_user(self, user_id: str):
        from clinic_chat.models import User

        try:
            oid = OID(user_id)
        except Exception:
            return None
        with transient_store_errors("load user"):
            return await User.get(oid)

    async def resolve_identity(self, credential: str) -> Identity:
        from clinic_chat.security import decode_token

        if not credential:
            raise AuthError("No token provided")
        payload = decode_token(credential, token_type="access")
        user_id = payload.get("sub")
        if not user_id:
            raise AuthError("No user ID in token")

        user = await self._get_user(user_id)
        if not user or not user.is_active:
            raise AuthError("User not found")

        claimed_role = payload.get("role")
        if claimed_role and claimed_role != user.role.value:
            logger.warning(f"Token role mismatch for user {user_id}: {claimed_role} != {user.role.value}")
            raise AuthError("Token role does not match user")

        return Identity(
            user_id=str(user.id),
            role=user.role,
            display_name=user.name or user.phone,
        )

    async def lookup_user(self, user_id: str, role: Role) -> UserProfile:
        user = await self._get_user(user_id)
        if not user or user.role != role or not user.is_active:
            raise NotFoundError(f"{role.value.capitalize()} not found")
        return _profile(user)

    async def list_doctors(self) -> List[UserProfile]:
        """Active doctors sorted by name, for patients choosing whom to contact."""
        from clinic_chat.models import User

        with transient_store_errors("list doctors"):
            doctors = await User.find(
                {"role": Role.DOCTOR.value, "is_active": True}
            ).sort([("name", ASCENDING)]).to_list()
        return [_profile(user) for user in doctors]

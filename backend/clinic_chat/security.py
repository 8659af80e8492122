from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError

from clinic_chat.config import get_settings
from clinic_chat.errors import AuthError
from clinic_chat.services.identity_service import Identity

# tokenUrl is only used by the Swagger UI; tokens are issued by the clinic auth service.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/staff-login", auto_error=False)


# ------------------------ JWT helpers ------------------------


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT access token (short-lived - 1 hour by default)."""
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str, token_type: str = "access") -> dict:
    """Decode JWT token and verify its type."""
    settings = get_settings()
    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        raise AuthError("Invalid or expired token")
    if payload.get("type") != token_type:
        raise AuthError(f"Invalid token type. Expected {token_type}")
    return payload


def bearer_from_header(value: str | None) -> str | None:
    if value and value.startswith("Bearer "):
        return value[len("Bearer "):].strip() or None
    return None


async def get_current_identity(
    request: Request,
    token: str | None = Depends(oauth2_scheme),
) -> Identity:
    """Resolve the bearer token through the identity provider.
    Raises AuthError (401) if the token is missing, invalid, expired, or the user is unknown.
    """
    if not token:
        raise AuthError("Not authenticated")
    provider = request.app.state.identity_provider
    return await provider.resolve_identity(token)

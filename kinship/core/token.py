"""
Token management and validation logic.
All JWT and authentication dependency operations are centralized here.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from kinship.core.config import settings
from kinship.core.errors import AuthenticationRequiredError

# auto_error=False so a missing header maps to AuthenticationRequiredError
security_scheme = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire, "iat": now})

    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate JWT token string"""
    try:
        return jwt.decode(
            token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm]
        )
    except JWTError:
        return None


def verify_token(token: Optional[str]) -> Optional[str]:
    """Verify token and extract user ID (sub claim)"""
    if not token:
        return None
    payload = decode_token(token)
    if payload is None:
        return None
    return payload.get("sub")


async def get_current_user_id(
    auth: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security_scheme)],
) -> str:
    """
    FastAPI dependency to validate token and return current user ID.
    Used in protected routes.
    """
    if auth is None:
        raise AuthenticationRequiredError("Missing bearer token")
    user_id = verify_token(auth.credentials)
    if not user_id:
        raise AuthenticationRequiredError("Could not validate credentials")
    return user_id


CurrentUserDep = Annotated[str, Depends(get_current_user_id)]

"""FastAPI authentication dependencies for route protection."""

import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.jwt import decode_token
from app.database import get_db
from app.models.user import User

# Missing credentials are reported as 401 like every other auth failure
_bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _verify_token(db: AsyncSession, token: str, expected_type: str) -> tuple[User, dict]:
    try:
        payload = decode_token(token)
    except JWTError:
        raise _unauthorized("Could not validate credentials") from None

    # Sign-in and refresh tokens are only accepted by the credentials exchange
    if payload.get("type") != expected_type:
        raise _unauthorized("Invalid token type")

    sub: str | None = payload.get("sub")
    if sub is None:
        raise _unauthorized("Could not validate credentials")

    try:
        user_id = uuid.UUID(sub)
    except ValueError:
        raise _unauthorized("Could not validate credentials") from None

    user = await db.get(User, user_id)
    if user is None:
        raise _unauthorized("Could not validate credentials")

    if not user.is_active:
        raise _unauthorized("User account is inactive")

    return user, payload


async def authenticate_token(db: AsyncSession, token: str, expected_type: str) -> User:
    """Verify a JWT of the given type and return the active user it was issued to.

    Raises:
        HTTPException 401: If the token is invalid, expired, of another type,
            or its user is missing or inactive.
    """
    user, _ = await _verify_token(db, token, expected_type)
    return user


async def consume_sign_in_token(db: AsyncSession, token: str) -> User:
    """Verify a sign-in token and use it up.

    The user's ``sign_in_token_version`` is bumped with a conditional update,
    so of two concurrent exchanges of the same link only one succeeds. Every
    other link issued before the exchange stops working as well. The user's
    sign-in attempts are reset.

    Raises:
        HTTPException 401: If the token is invalid or was already used.
    """
    user, payload = await _verify_token(db, token, "sign_in")
    version = payload.get("ver")
    if not isinstance(version, int) or version != user.sign_in_token_version:
        raise _unauthorized("Sign-in link has already been used")

    result = await db.execute(
        update(User)
        .where(User.id == user.id, User.sign_in_token_version == version)
        .values(sign_in_token_version=version + 1, sign_in_attempts=0, last_sign_in_attempt_at=None)
    )
    if result.rowcount != 1:
        raise _unauthorized("Sign-in link has already been used")
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate the Bearer access token, then return the authenticated user.

    Raises:
        HTTPException 401: If the token is missing, invalid, expired, of the
            wrong type, or its user is not found.
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")
    return await authenticate_token(db, credentials.credentials, "access")


async def get_current_active_user(
    user: User = Depends(get_current_user),
) -> User:
    """Return the current user only if their account is active.

    Raises:
        HTTPException 403: If the user account is inactive.
    """
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive",
        )
    return user

"""JWT token creation and verification for sign-in, access and refresh tokens."""

from datetime import datetime, timedelta, timezone

from jose import jwt

from app.config import settings


def _create_token(data: dict, token_type: str, expires_delta: timedelta) -> str:
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    to_encode.update({"exp": now + expires_delta, "iat": now, "type": token_type})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a short-lived access token.

    Args:
        data: Payload data. Must include ``sub`` (user UUID as string).
        expires_delta: Custom expiration duration. Defaults to
            ``settings.jwt_access_token_expire_minutes`` minutes.

    Returns:
        Encoded JWT string.
    """
    return _create_token(
        data, "access", expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )


def create_refresh_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a long-lived refresh token.

    Args:
        data: Payload data. Must include ``sub`` (user UUID as string).
        expires_delta: Custom expiration duration. Defaults to
            ``settings.jwt_refresh_token_expire_days`` days.

    Returns:
        Encoded JWT string.
    """
    return _create_token(
        data, "refresh", expires_delta or timedelta(days=settings.jwt_refresh_token_expire_days)
    )


def create_sign_in_token(user_id: str, version: int = 0, expires_delta: timedelta | None = None) -> str:
    """Create the single-purpose token embedded in emailed sign-in links.

    Args:
        user_id: The user's UUID as a string.
        version: The user's current ``sign_in_token_version``. The token is
            only accepted while the user's version still matches.
        expires_delta: Custom expiration duration. Defaults to
            ``settings.jwt_sign_in_token_expire_minutes`` minutes.

    Returns:
        Encoded JWT string.
    """
    return _create_token(
        {"sub": user_id, "ver": version},
        "sign_in",
        expires_delta or timedelta(minutes=settings.jwt_sign_in_token_expire_minutes),
    )


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Args:
        token: Encoded JWT string.

    Returns:
        Decoded payload dictionary.

    Raises:
        jose.JWTError: If the token is invalid, expired, or malformed.
    """
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])


def create_token_pair(user_id: str) -> dict[str, str]:
    """Create both access and refresh tokens for a user.

    Args:
        user_id: The user's UUID as a string.

    Returns:
        Dictionary with ``access_token``, ``refresh_token``, and ``token_type``.
    """
    payload = {"sub": user_id}
    return {
        "access_token": create_access_token(payload),
        "refresh_token": create_refresh_token(payload),
        "token_type": "bearer",
    }

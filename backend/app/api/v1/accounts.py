"""Accounts API router — passwordless sign-up/sign-in, credentials, profile."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db
from app.auth.dependencies import authenticate_token, consume_sign_in_token
from app.auth.dispatch import SignInTokenDispatcher, get_sign_in_token_dispatcher
from app.auth.jwt import create_token_pair, decode_token
from app.auth.sign_in import TooManySignInAttemptsError, issue_sign_in_token
from app.billing.exceptions import ProviderGatewayError
from app.billing.gateways import ProviderGateways, get_provider_gateways, get_stripe_gateway
from app.billing.stripe_client import StripeGateway
from app.models.user import User
from app.schemas.auth import (
    CredentialsRequest,
    ProfileResponse,
    SignInRequest,
    SignUpRequest,
    TokenResponse,
)
from app.services.subscription_service import is_user_subscribed, on_user_deleted

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/accounts", tags=["accounts"])


async def _get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def _send_sign_in_link(user: User, dispatcher: SignInTokenDispatcher) -> None:
    try:
        token = issue_sign_in_token(user)
    except TooManySignInAttemptsError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many sign-in attempts",
            headers={"Retry-After": str(e.retry_after_seconds)},
        ) from e
    await dispatcher.dispatch(user.email, token)


# ---------------------------------------------------------------------------
# POST /signUp
# ---------------------------------------------------------------------------


@router.post("/signUp", status_code=status.HTTP_201_CREATED)
async def sign_up(
    body: SignUpRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: SignInTokenDispatcher = Depends(get_sign_in_token_dispatcher),
) -> None:
    """Create an account (or reuse an existing one) and send a sign-in link."""
    user = await _get_user_by_email(db, body.email)
    if user is None:
        user = User(email=body.email, name=body.name, is_active=True)
        db.add(user)
        await db.flush()
        logger.info("Created user %s", user.id)
    elif not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive",
        )

    await _send_sign_in_link(user, dispatcher)


# ---------------------------------------------------------------------------
# POST /signIn
# ---------------------------------------------------------------------------


@router.post("/signIn", status_code=status.HTTP_201_CREATED)
async def sign_in(
    body: SignInRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: SignInTokenDispatcher = Depends(get_sign_in_token_dispatcher),
) -> None:
    """Send a sign-in link. Responds the same whether or not the account exists."""
    user = await _get_user_by_email(db, body.email)
    if user is None or not user.is_active:
        logger.info("Sign-in requested for unknown or inactive account")
        return

    await _send_sign_in_link(user, dispatcher)


# ---------------------------------------------------------------------------
# POST /credentials
# ---------------------------------------------------------------------------


@router.post("/credentials", response_model=TokenResponse)
async def issue_credentials(body: CredentialsRequest, db: AsyncSession = Depends(get_db)) -> TokenResponse:
    """Exchange a sign-in token or a refresh token for a new token pair.

    A sign-in token works once; exchanging it also invalidates every other
    link sent before it.
    """
    try:
        token_type = decode_token(body.token).get("type")
    except JWTError:
        token_type = None

    if token_type == "sign_in":
        user = await consume_sign_in_token(db, body.token)
    else:
        user = await authenticate_token(db, body.token, "refresh")

    return TokenResponse(**create_token_pair(str(user.id)))


# ---------------------------------------------------------------------------
# /profile
# ---------------------------------------------------------------------------


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> ProfileResponse:
    """Return the authenticated user's profile."""
    return ProfileResponse(
        id=current_user.id,
        email=current_user.email,
        name=current_user.name,
        is_active=current_user.is_active,
        is_subscribed=await is_user_subscribed(db, current_user.id),
        created_at=current_user.created_at,
    )


@router.delete("/profile", status_code=status.HTTP_204_NO_CONTENT)
async def delete_profile(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    gateways: ProviderGateways = Depends(get_provider_gateways),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
) -> Response:
    """Deactivate the account and end its subscriptions."""
    try:
        await on_user_deleted(db, current_user.id, gateways, stripe_gateway)
    except ProviderGatewayError as e:
        logger.error("Failed to end subscriptions of user %s: %s", current_user.id, e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to cancel subscriptions with the billing provider",
        ) from e

    current_user.is_active = False
    await db.flush()
    logger.info("Deactivated user %s", current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

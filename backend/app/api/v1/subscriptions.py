"""Subscriptions API endpoints — plans, purchase flows, cancellation, Customer Portal, gift cards."""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db
from app.billing.exceptions import (
    DuplicateSubscriptionError,
    GiftCardExpiredError,
    GiftCardNotFoundError,
    GiftCardRedeemedError,
    ProviderGatewayError,
    SubscriptionFlowParamsError,
    SubscriptionNotFoundError,
    SubscriptionPlanNotFoundError,
    SubscriptionStateError,
    UnsupportedSubscriptionPlanProviderError,
)
from app.billing.gateways import ProviderGateways, get_provider_gateways, get_stripe_gateway
from app.billing.stripe_client import StripeGateway
from app.models.user import User
from app.schemas.billing import (
    CustomerPortalResponse,
    GiftCardResponse,
    PlanResponse,
    SubscriptionFlowRequest,
    SubscriptionFlowResponse,
    SubscriptionResponse,
)
from app.services import gift_card_service, subscription_service
from app.services.subscription_service import SubscriptionDetails

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


def _to_response(details: SubscriptionDetails) -> SubscriptionResponse:
    response = SubscriptionResponse.model_validate(details.subscription)
    response.stripe_customer_portal_url = details.stripe_customer_portal_url
    return response


def _bad_gateway(e: ProviderGatewayError) -> HTTPException:
    logger.error("Billing provider error: %s", e)
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail="Billing provider request failed",
    )


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@router.get("/plans", response_model=list[PlanResponse])
async def list_plans(
    provider: str | None = Query(default=None, description="GOOGLE_PLAY, STRIPE or GIFT_CARD"),
    db: AsyncSession = Depends(get_db),
) -> list[PlanResponse]:
    """List available plans (public — no auth required)."""
    try:
        plans = await subscription_service.list_plans(db, provider)
    except UnsupportedSubscriptionPlanProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e
    return [PlanResponse.model_validate(plan) for plan in plans]


# ---------------------------------------------------------------------------
# Purchase flow
# ---------------------------------------------------------------------------


@router.post("", response_model=SubscriptionFlowResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: SubscriptionFlowRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
) -> SubscriptionFlowResponse:
    """Start a subscription purchase flow."""
    try:
        result = await subscription_service.create_subscription(
            db,
            current_user,
            plan_id=body.plan_id,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
            stripe_gateway=stripe_gateway,
        )
    except (SubscriptionPlanNotFoundError, SubscriptionFlowParamsError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    except DuplicateSubscriptionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User already has an active subscription",
        ) from e
    except ProviderGatewayError as e:
        raise _bad_gateway(e) from e

    return SubscriptionFlowResponse(
        subscription=_to_response(SubscriptionDetails(result.subscription)),
        stripe_checkout_session_url=result.stripe_checkout_session_url,
    )


@router.get("", response_model=list[SubscriptionResponse])
async def list_subscriptions(
    only_active: bool = Query(default=False),
    page: int = Query(default=0, ge=0),
    stripe_return_url: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
) -> list[SubscriptionResponse]:
    """List the user's subscriptions, newest first, 20 per page."""
    try:
        subscriptions = await subscription_service.list_subscriptions(
            db,
            current_user,
            only_active=only_active,
            page=page,
            stripe_return_url=stripe_return_url,
            stripe_gateway=stripe_gateway,
        )
    except ProviderGatewayError as e:
        raise _bad_gateway(e) from e
    return [_to_response(details) for details in subscriptions]


# ---------------------------------------------------------------------------
# Customer Portal
# ---------------------------------------------------------------------------


@router.get("/stripeCustomerPortalUrl", response_model=CustomerPortalResponse)
async def get_stripe_customer_portal_url(
    return_url: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
) -> CustomerPortalResponse:
    """Create a Stripe Customer Portal session for subscription management."""
    try:
        url = await subscription_service.get_stripe_customer_portal_url(
            db, current_user, return_url, stripe_gateway
        )
    except SubscriptionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No Stripe customer found. Subscribe first.",
        ) from e
    except ProviderGatewayError as e:
        raise _bad_gateway(e) from e
    return CustomerPortalResponse(url=url)


# ---------------------------------------------------------------------------
# Gift cards
# ---------------------------------------------------------------------------


@router.get("/giftCards/{code}", response_model=GiftCardResponse)
async def get_gift_card(
    code: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> GiftCardResponse:
    try:
        gift_card = await gift_card_service.get_gift_card(db, current_user, code)
    except GiftCardNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Gift card not found") from e
    return GiftCardResponse.model_validate(gift_card)


@router.post(
    "/giftCards/{code}/redeem",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_gift_card(
    code: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionResponse:
    """Redeem a gift card into an active subscription."""
    try:
        subscription = await gift_card_service.redeem_gift_card(db, current_user, code)
    except GiftCardNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Gift card not found") from e
    except DuplicateSubscriptionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User already has an active subscription",
        ) from e
    except GiftCardExpiredError as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail="Gift card has expired") from e
    except GiftCardRedeemedError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Gift card was already redeemed",
        ) from e
    return _to_response(SubscriptionDetails(subscription))


# ---------------------------------------------------------------------------
# Single subscription
# ---------------------------------------------------------------------------


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: uuid.UUID,
    stripe_return_url: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
) -> SubscriptionResponse:
    try:
        details = await subscription_service.get_subscription(
            db,
            current_user,
            subscription_id,
            stripe_return_url=stripe_return_url,
            stripe_gateway=stripe_gateway,
        )
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found") from e
    except ProviderGatewayError as e:
        raise _bad_gateway(e) from e
    return _to_response(details)


@router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    gateways: ProviderGateways = Depends(get_provider_gateways),
) -> Response:
    """Stop auto-renewal; the subscription stays active until its current period ends."""
    try:
        await subscription_service.cancel_subscription(db, current_user, subscription_id, gateways)
    except SubscriptionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found") from e
    except SubscriptionStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except ProviderGatewayError as e:
        raise _bad_gateway(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)

"""Pydantic v2 request/response schemas for subscription endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.subscription import SubscriptionProvider, SubscriptionStatus

# --- Request schemas ---


class SubscriptionFlowRequest(BaseModel):
    """Request to start a purchase flow.

    ``success_url`` and ``cancel_url`` are required for Stripe plans. The
    literal ``{subscriptionId}`` in either URL is replaced with the id of
    the new subscription.
    """

    plan_id: int
    success_url: str | None = Field(default=None, max_length=2048)
    cancel_url: str | None = Field(default=None, max_length=2048)


# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    id: int
    provider: SubscriptionProvider
    provider_plan_id: str
    billing_period_months: int
    trial_period_days: int
    price_in_cents: int
    currency: str

    model_config = ConfigDict(from_attributes=True)


class SubscriptionResponse(BaseModel):
    """A subscription of the authenticated user."""

    id: uuid.UUID
    plan: PlanResponse
    status: SubscriptionStatus
    is_active: bool
    is_payment_pending: bool
    is_auto_renewing: bool
    is_refunded: bool
    start_at: datetime | None
    end_at: datetime | None
    stripe_customer_portal_url: str | None = None

    model_config = ConfigDict(from_attributes=True)


class SubscriptionFlowResponse(BaseModel):
    """Result of starting a purchase flow.

    Google Play clients pass ``subscription.id`` to the Play Billing Library
    as the obfuscated account id. Stripe clients redirect to
    ``stripe_checkout_session_url``.
    """

    subscription: SubscriptionResponse
    stripe_checkout_session_url: str | None = None


class CustomerPortalResponse(BaseModel):
    """Stripe Customer Portal URL returned to frontend."""

    url: str


class GiftCardResponse(BaseModel):
    code: str
    hour_credits: int
    plan: PlanResponse
    is_redeemed: bool
    expires_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class WebhookResponse(BaseModel):
    status: str = Field(..., examples=["processed", "ignored"])

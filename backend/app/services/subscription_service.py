"""Subscription service — queries over the subscription store and the
commands behind the subscriptions API (start a purchase flow, list, get,
cancel, customer portal, account deletion)."""

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import (
    DuplicateSubscriptionError,
    SubscriptionFlowParamsError,
    SubscriptionNotFoundError,
    SubscriptionPlanNotFoundError,
    SubscriptionStateError,
    UnsupportedSubscriptionPlanProviderError,
)
from app.billing.gateways import ProviderGateways
from app.billing.plans import get_plan_by_id
from app.billing.plans import list_plans as list_plans_by_provider
from app.billing.stripe_client import StripeGateway
from app.database import utcnow
from app.models.subscription import Subscription, SubscriptionPlan, SubscriptionProvider
from app.models.user import User
from app.services.customer_service import get_customer, get_or_create_customer

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_PAGE_SIZE = 20
SUBSCRIPTION_ID_PLACEHOLDER = "{subscriptionId}"


# ---------------------------------------------------------------------------
# Store queries
# ---------------------------------------------------------------------------


def _active_clause():
    return (
        Subscription.start_at.is_not(None),
        Subscription.end_at.is_not(None),
        Subscription.end_at > utcnow(),
    )


async def get_subscription_by_id(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription | None:
    return await db.get(Subscription, subscription_id)


async def get_subscription_by_provider_id(
    db: AsyncSession, provider_subscription_id: str
) -> Subscription | None:
    """Look up a subscription by its Google Play purchase token or Stripe subscription id."""
    result = await db.execute(
        select(Subscription).where(Subscription.provider_subscription_id == provider_subscription_id)
    )
    return result.scalar_one_or_none()


async def get_active_subscriptions(db: AsyncSession, customer_user_id: uuid.UUID) -> list[Subscription]:
    """Return the customer's entitled (active or payment-pending) subscriptions.

    Outside of a conflict being resolved this holds at most one row.
    """
    result = await db.execute(
        select(Subscription)
        .where(Subscription.customer_user_id == customer_user_id, *_active_clause())
        .order_by(Subscription.start_at.desc())
    )
    return list(result.scalars().all())


async def is_user_subscribed(db: AsyncSession, user_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(exists().where(Subscription.customer_user_id == user_id, *_active_clause()))
    )
    return bool(result.scalar())


async def get_started_subscriptions(
    db: AsyncSession,
    customer_user_id: uuid.UUID,
    *,
    only_active: bool = False,
    page: int = 0,
) -> list[Subscription]:
    """Page through subscriptions that were ever activated, newest first."""
    query = select(Subscription).where(Subscription.customer_user_id == customer_user_id)
    if only_active:
        query = query.where(*_active_clause())
    else:
        query = query.where(Subscription.start_at.is_not(None))
    query = (
        query.order_by(Subscription.start_at.desc(), Subscription.created_at.desc())
        .offset(page * SUBSCRIPTIONS_PAGE_SIZE)
        .limit(SUBSCRIPTIONS_PAGE_SIZE)
    )
    result = await db.execute(query)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass
class SubscriptionFlowResult:
    subscription: Subscription
    stripe_checkout_session_url: str | None = None


@dataclass
class SubscriptionDetails:
    subscription: Subscription
    stripe_customer_portal_url: str | None = None


async def list_plans(db: AsyncSession, provider: str | None = None) -> list[SubscriptionPlan]:
    """List purchasable plans, optionally filtered by provider name."""
    if provider is None:
        return await list_plans_by_provider(db)
    try:
        parsed = SubscriptionProvider(provider.upper())
    except ValueError as e:
        raise UnsupportedSubscriptionPlanProviderError(f"unsupported provider {provider!r}") from e
    return await list_plans_by_provider(db, parsed)


async def create_subscription(
    db: AsyncSession,
    user: User,
    *,
    plan_id: int,
    success_url: str | None,
    cancel_url: str | None,
    stripe_gateway: StripeGateway,
) -> SubscriptionFlowResult:
    """Start a purchase flow.

    Inserts an incomplete subscription and, for Stripe plans, opens a
    checkout session whose ``client_reference_id`` is the new subscription
    id. Google Play clients pass the subscription id to the Play Billing
    Library as the obfuscated account id instead.
    """
    plan = await get_plan_by_id(db, plan_id)
    if plan is None or plan.provider == SubscriptionProvider.GIFT_CARD:
        raise SubscriptionPlanNotFoundError(f"subscription plan {plan_id} does not exist")

    if plan.provider == SubscriptionProvider.STRIPE and not (success_url and cancel_url):
        raise SubscriptionFlowParamsError("success_url and cancel_url are required for stripe plans")

    customer = await get_or_create_customer(db, user.id)
    if await get_active_subscriptions(db, customer.user_id):
        raise DuplicateSubscriptionError(f"user {user.id} already has an active subscription")

    subscription = Subscription(customer=customer, plan=plan, is_auto_renewing=True)
    db.add(subscription)
    await db.flush()
    logger.info("Created subscription %s on plan %s for user %s", subscription.id, plan.id, user.id)

    result = SubscriptionFlowResult(subscription=subscription)
    if plan.provider == SubscriptionProvider.STRIPE:
        subscription_id = str(subscription.id)
        trial_days = None
        if not customer.is_trial_period_used and plan.trial_period_days > 0:
            trial_days = plan.trial_period_days

        session = await stripe_gateway.create_checkout_session(
            success_url=success_url.replace(SUBSCRIPTION_ID_PLACEHOLDER, subscription_id),
            cancel_url=cancel_url.replace(SUBSCRIPTION_ID_PLACEHOLDER, subscription_id),
            price_id=plan.provider_plan_id,
            client_reference_id=subscription_id,
            customer_email=None if customer.stripe_id else user.email,
            stripe_customer_id=customer.stripe_id,
            trial_period_days=trial_days,
        )
        if session.subscription_id:
            subscription.provider_subscription_id = session.subscription_id
            await db.flush()
        result.stripe_checkout_session_url = session.url

    return result


async def _with_portal_url(
    subscription: Subscription, stripe_return_url: str | None, stripe_gateway: StripeGateway
) -> SubscriptionDetails:
    details = SubscriptionDetails(subscription=subscription)
    customer = subscription.customer
    if (
        stripe_return_url
        and subscription.plan.provider == SubscriptionProvider.STRIPE
        and subscription.is_active
        and customer.stripe_id
    ):
        details.stripe_customer_portal_url = await stripe_gateway.create_customer_portal_session(
            customer.stripe_id, stripe_return_url
        )
    return details


async def list_subscriptions(
    db: AsyncSession,
    user: User,
    *,
    only_active: bool = False,
    page: int = 0,
    stripe_return_url: str | None = None,
    stripe_gateway: StripeGateway,
) -> list[SubscriptionDetails]:
    subscriptions = await get_started_subscriptions(db, user.id, only_active=only_active, page=page)
    return [await _with_portal_url(s, stripe_return_url, stripe_gateway) for s in subscriptions]


async def get_subscription(
    db: AsyncSession,
    user: User,
    subscription_id: uuid.UUID,
    *,
    stripe_return_url: str | None = None,
    stripe_gateway: StripeGateway,
) -> SubscriptionDetails:
    """Get one of the user's subscriptions. Never-started flows are not visible."""
    subscription = await get_subscription_by_id(db, subscription_id)
    if subscription is None or subscription.customer_user_id != user.id or subscription.start_at is None:
        raise SubscriptionNotFoundError(f"subscription {subscription_id} not found")
    return await _with_portal_url(subscription, stripe_return_url, stripe_gateway)


async def cancel_subscription(
    db: AsyncSession,
    user: User,
    subscription_id: uuid.UUID,
    gateways: ProviderGateways,
) -> Subscription:
    """Stop auto-renewal of an active subscription.

    The subscription stays entitled until its recorded end; the provider's
    webhooks deliver the final deactivation.
    """
    subscription = await get_subscription_by_id(db, subscription_id)
    if subscription is None or subscription.customer_user_id != user.id or not subscription.is_active:
        raise SubscriptionNotFoundError(f"no active subscription {subscription_id}")

    plan = subscription.plan
    gateway = gateways.get(plan.provider)
    if gateway is None or subscription.provider_subscription_id is None:
        raise SubscriptionStateError(f"{plan.provider.value} subscriptions cannot be cancelled")

    await gateway.cancel(plan.provider_plan_id, subscription.provider_subscription_id)
    subscription.is_auto_renewing = False
    await db.flush()
    logger.info("Cancelled auto-renewal of subscription %s", subscription.id)
    return subscription


async def get_stripe_customer_portal_url(
    db: AsyncSession, user: User, return_url: str, stripe_gateway: StripeGateway
) -> str:
    customer = await get_customer(db, user.id)
    if customer is None or not customer.stripe_id:
        raise SubscriptionNotFoundError(f"user {user.id} has no stripe customer")
    return await stripe_gateway.create_customer_portal_session(customer.stripe_id, return_url)


async def on_user_deleted(
    db: AsyncSession,
    user_id: uuid.UUID,
    gateways: ProviderGateways,
    stripe_gateway: StripeGateway,
) -> None:
    """End the subscriptions of a deleted account and scrub its Stripe customer."""
    customer = await get_customer(db, user_id)
    if customer is None:
        return

    now = utcnow()
    for subscription in await get_active_subscriptions(db, user_id):
        plan = subscription.plan
        gateway = gateways.get(plan.provider)
        if gateway is not None and subscription.provider_subscription_id:
            await gateway.cancel(plan.provider_plan_id, subscription.provider_subscription_id, immediately=True)
        subscription.end_at = now
        subscription.is_auto_renewing = False
        logger.info("Ended subscription %s of deleted user %s", subscription.id, user_id)

    if customer.stripe_id:
        await stripe_gateway.reset_customer_name_and_email(customer.stripe_id)
    await db.flush()

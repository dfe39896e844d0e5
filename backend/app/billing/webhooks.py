"""Stripe webhook event handlers — reconcile subscriptions with Stripe.

Events are only used as references: every handler re-fetches the Stripe
subscription before changing local state, since deliveries can be late,
retried or reordered.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import (
    ProviderGatewayError,
    WebhookEventError,
    WebhookPayloadError,
)
from app.billing.notifications import (
    CHECKOUT_SESSION_COMPLETED,
    CUSTOMER_DELETED,
    SUBSCRIPTION_EVENT_TYPES,
    StripeCheckoutSession,
    StripeNotification,
)
from app.billing.plans import get_plan_by_provider_plan_id
from app.billing.reconciliation import (
    ensure_provider_subscription_id_available,
    get_other_active_subscriptions,
    supersede_subscription,
)
from app.billing.stripe_client import ENTITLED_STATUSES, StripeGateway, StripeSubscription
from app.database import utcnow
from app.models.subscription import Subscription, SubscriptionProvider
from app.services.customer_service import mark_trial_period_used, reset_stripe_id
from app.services.subscription_service import get_subscription_by_id, get_subscription_by_provider_id

logger = logging.getLogger(__name__)

# Checkout completes with "no_payment_required" when the subscription starts with a trial.
_ACCEPTED_PAYMENT_STATUSES = frozenset({"paid", "no_payment_required"})


async def copy_subscription_details(
    db: AsyncSession,
    subscription: Subscription,
    stripe_sub: StripeSubscription,
    now: datetime | None = None,
) -> None:
    """Copy the state of a Stripe subscription onto the local subscription.

    Raises:
        WebhookEventError: If the Stripe subscription does not have exactly
            one price or its price is not a registered plan.
    """
    if len(stripe_sub.price_ids) != 1:
        raise WebhookEventError(
            f"stripe subscription {stripe_sub.id} has {len(stripe_sub.price_ids)} prices, expected exactly one"
        )

    price_id = stripe_sub.price_ids[0]
    if price_id != subscription.plan.provider_plan_id:
        plan = await get_plan_by_provider_plan_id(db, SubscriptionProvider.STRIPE, price_id)
        if plan is None:
            raise WebhookEventError(f"updated provider plan id {price_id!r} not recognised")
        logger.info(
            "Subscription %s switched plan %s -> %s",
            subscription.id,
            subscription.plan.provider_plan_id,
            price_id,
        )
        subscription.plan = plan

    subscription.start_at = stripe_sub.start_date or stripe_sub.current_period_start
    subscription.is_payment_pending = stripe_sub.status == "past_due"
    subscription.is_auto_renewing = not stripe_sub.cancel_at_period_end
    if stripe_sub.status in ENTITLED_STATUSES:
        subscription.end_at = stripe_sub.ended_at or stripe_sub.current_period_end
    else:
        # canceled, unpaid, incomplete, incomplete_expired
        subscription.end_at = now or utcnow()


async def _refund_double_purchase(
    db: AsyncSession,
    subscription: Subscription,
    stripe_subscription_id: str,
    gateway: StripeGateway,
    now: datetime,
) -> None:
    """Refund a Stripe subscription that would give its customer a second entitlement."""
    logger.warning(
        "Double purchase by customer %s: refunding stripe subscription %s of subscription %s",
        subscription.customer_user_id,
        stripe_subscription_id,
        subscription.id,
    )
    await gateway.refund_subscription(stripe_subscription_id)
    subscription.provider_subscription_id = stripe_subscription_id
    subscription.is_refunded = True
    if subscription.end_at is None or subscription.end_at > now:
        supersede_subscription(subscription, now, reason="refunded double purchase")
    else:
        subscription.is_auto_renewing = False
        subscription.is_payment_pending = False
    await db.flush()


def _validate_checkout_session(session: StripeCheckoutSession) -> None:
    if session.mode != "subscription":
        raise WebhookPayloadError(f"checkout session {session.id} mode is {session.mode!r}")
    if session.status != "complete":
        raise WebhookPayloadError(f"checkout session {session.id} status is {session.status!r}")
    if session.payment_status not in _ACCEPTED_PAYMENT_STATUSES:
        raise WebhookPayloadError(f"checkout session {session.id} payment status is {session.payment_status!r}")
    if session.subscription_id is None:
        raise WebhookPayloadError(f"checkout session {session.id} has no subscription")
    if session.customer_id is None:
        raise WebhookPayloadError(f"checkout session {session.id} has no customer")


async def _apply_checkout_session(
    db: AsyncSession, session: StripeCheckoutSession, gateway: StripeGateway
) -> None:
    _validate_checkout_session(session)

    try:
        subscription_id = uuid.UUID(session.client_reference_id or "")
    except ValueError as e:
        raise WebhookEventError(f"checkout session {session.id} has an invalid client_reference_id") from e

    subscription = await get_subscription_by_id(db, subscription_id)
    if subscription is None:
        raise WebhookEventError(f"no subscription {subscription_id} for checkout session {session.id}")
    if subscription.plan.provider != SubscriptionProvider.STRIPE:
        raise WebhookEventError(f"subscription {subscription.id} is not a stripe subscription")

    if subscription.is_refunded:
        if subscription.provider_subscription_id == session.subscription_id:
            logger.info("Checkout session %s was already refunded as a double purchase", session.id)
            return
        raise WebhookEventError(f"subscription {subscription.id} was refunded")

    if subscription.provider_subscription_id == session.subscription_id and subscription.start_at is not None:
        # Later state arrives through customer.subscription.* events
        logger.info("Checkout session %s was already applied to subscription %s", session.id, subscription.id)
        return

    await ensure_provider_subscription_id_available(db, subscription, session.subscription_id)
    now = utcnow()

    if await get_other_active_subscriptions(db, subscription):
        await _refund_double_purchase(db, subscription, session.subscription_id, gateway, now)
        return

    subscription.provider_subscription_id = session.subscription_id
    stripe_sub = await gateway.get_subscription(session.subscription_id)
    await copy_subscription_details(db, subscription, stripe_sub, now)

    customer = subscription.customer
    customer.stripe_id = session.customer_id
    mark_trial_period_used(customer)
    await db.flush()
    logger.info(
        "Checkout completed: subscription %s is %s until %s",
        subscription.id,
        subscription.status.value,
        subscription.end_at,
    )


async def handle_checkout_session_completed(
    db: AsyncSession, notification: StripeNotification, gateway: StripeGateway
) -> None:
    """Handle checkout.session.completed — activate the subscription the session was opened for.

    A session that cannot be applied is compensated by refunding and
    cancelling its Stripe subscription. When the compensation fails too, the
    original error is raised with the failure chained to it.
    """
    session = notification.checkout_session
    if session is None:
        raise WebhookPayloadError(f"event {notification.event_id} carries no checkout session")

    try:
        await _apply_checkout_session(db, session, gateway)
    except (WebhookPayloadError, WebhookEventError) as outer:
        if session.subscription_id is None:
            raise

        logger.warning(
            "Refunding stripe subscription %s of unusable checkout session %s: %s",
            session.subscription_id,
            session.id,
            outer,
        )
        try:
            await gateway.refund_subscription(session.subscription_id)
        except ProviderGatewayError as inner:
            outer.add_note(f"refunding stripe subscription {session.subscription_id} also failed: {inner}")
            raise outer from inner
        raise


async def handle_subscription_event(
    db: AsyncSession, notification: StripeNotification, gateway: StripeGateway
) -> None:
    """Handle customer.subscription.* — sync plan, status and period from Stripe.

    A revival that would leave the customer with a second entitled
    subscription is refunded instead of applied.
    """
    stripe_subscription_id = notification.object_id
    subscription = await get_subscription_by_provider_id(db, stripe_subscription_id)
    if subscription is None:
        raise WebhookEventError(f"no subscription for stripe subscription {stripe_subscription_id}")

    if subscription.is_refunded:
        logger.info(
            "Skipping %s for refunded subscription %s",
            notification.event_type,
            subscription.id,
        )
        return

    stripe_sub = await gateway.get_subscription(stripe_subscription_id)
    if (
        not subscription.is_active
        and stripe_sub.status in ENTITLED_STATUSES
        and await get_other_active_subscriptions(db, subscription)
    ):
        # e.g. an unpaid subscription revived after the customer bought another one
        await _refund_double_purchase(db, subscription, stripe_subscription_id, gateway, utcnow())
        return

    await copy_subscription_details(db, subscription, stripe_sub)
    await db.flush()
    logger.info(
        "Subscription %s updated from %s: stripe status=%s, status=%s",
        subscription.id,
        notification.event_type,
        stripe_sub.status,
        subscription.status.value,
    )


async def handle_customer_deleted(
    db: AsyncSession, notification: StripeNotification, gateway: StripeGateway
) -> None:
    """Handle customer.deleted — unlink the Stripe customer, keep the local customer."""
    count = await reset_stripe_id(db, notification.object_id)
    logger.info("Stripe customer %s deleted: unlinked %d customer(s)", notification.object_id, count)


# Map event types to handler functions
EVENT_HANDLERS = {
    CHECKOUT_SESSION_COMPLETED: handle_checkout_session_completed,
    CUSTOMER_DELETED: handle_customer_deleted,
    **{event_type: handle_subscription_event for event_type in SUBSCRIPTION_EVENT_TYPES},
}


async def handle_stripe_notification(
    db: AsyncSession, notification: StripeNotification, gateway: StripeGateway
) -> None:
    """Dispatch a normalised Stripe event to its handler.

    Raises:
        WebhookPayloadError: If the event's payload cannot be used.
        WebhookEventError: If the event does not match local state.
        ProviderGatewayError: If Stripe cannot be reached.
    """
    handler = EVENT_HANDLERS.get(notification.event_type)
    if handler is None:
        logger.debug("Unhandled webhook event type: %s", notification.event_type)
        return
    logger.info("Processing webhook event: %s (id=%s)", notification.event_type, notification.event_id)
    await handler(db, notification, gateway)

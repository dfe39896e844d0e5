"""Google Play reconciliation — apply real-time developer notifications.

A notification only names a purchase token. The purchase itself is always
fetched from the Google Play Developer API and the local subscription is
brought in line with it.

On upgrade or downgrade Google Play issues a new purchase token and sends
the new purchase's notification before expiring the old one. The new
purchase points at the old token through ``linkedPurchaseToken``; the old
token's later notifications no longer resolve and are dropped.
"""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import ProviderGatewayError, WebhookEventError
from app.billing.gateways import ProviderGateway
from app.billing.google_play_client import PAYMENT_STATE_PENDING, SubscriptionPurchase
from app.billing.notifications import GooglePlayNotification
from app.billing.plans import get_plan_by_provider_plan_id
from app.billing.reconciliation import (
    ensure_provider_subscription_id_available,
    resolve_linked_conflicts,
)
from app.database import utcnow
from app.models.subscription import Subscription, SubscriptionPlan, SubscriptionProvider
from app.services.customer_service import mark_trial_period_used
from app.services.subscription_service import get_subscription_by_id, get_subscription_by_provider_id

logger = logging.getLogger(__name__)


async def _resolve_subscription(
    db: AsyncSession, notification: GooglePlayNotification, purchase: SubscriptionPurchase
) -> Subscription | None:
    """Find the local subscription a purchase belongs to.

    New purchases carry the local subscription id as the obfuscated account
    id set by the client. Every other notification is matched by purchase
    token, falling back to the linked token when Google Play rotated it
    before we caught up.
    """
    if notification.is_new_purchase:
        try:
            subscription_id = uuid.UUID(purchase.obfuscated_external_account_id or "")
        except ValueError as e:
            raise WebhookEventError("failed to parse obfuscatedExternalAccountId of the purchase") from e

        subscription = await get_subscription_by_id(db, subscription_id)
        if subscription is None:
            raise WebhookEventError(f"no subscription {subscription_id} for this purchase")
        return subscription

    subscription = await get_subscription_by_provider_id(db, notification.purchase_token)
    if subscription is None and purchase.linked_purchase_token:
        subscription = await get_subscription_by_provider_id(db, purchase.linked_purchase_token)
    return subscription


async def _resolve_plan(
    db: AsyncSession, subscription: Subscription, provider_plan_id: str
) -> SubscriptionPlan:
    if subscription.plan.provider != SubscriptionProvider.GOOGLE_PLAY:
        raise WebhookEventError(f"subscription {subscription.id} is not a google play subscription")
    if subscription.plan.provider_plan_id == provider_plan_id:
        return subscription.plan

    plan = await get_plan_by_provider_plan_id(db, SubscriptionProvider.GOOGLE_PLAY, provider_plan_id)
    if plan is None:
        raise WebhookEventError(f"unknown provider plan id {provider_plan_id!r}")
    return plan


def _check_token_takeover(subscription: Subscription, purchase_token: str, purchase: SubscriptionPurchase) -> None:
    """An entitled subscription only moves to a new token its purchase links to it."""
    current = subscription.provider_subscription_id
    if current is None or current == purchase_token or not subscription.is_active:
        return
    if purchase.linked_purchase_token == current:
        return
    logger.warning(
        "Rejecting google play purchase for subscription %s: it is active on another purchase token",
        subscription.id,
    )
    raise WebhookEventError(f"subscription {subscription.id} is already active on another purchase")


async def handle_google_play_notification(
    db: AsyncSession,
    notification: GooglePlayNotification,
    gateway: ProviderGateway,
) -> Subscription | None:
    """Reconcile the local subscription with a Google Play purchase.

    Returns the updated subscription, or ``None`` when the notification does
    not resolve to one.

    Conflicts are rejected with :class:`WebhookEventError` before any state
    is changed. Such a purchase is never acknowledged, so Google Play
    refunds it automatically.

    Raises:
        WebhookEventError: If the purchase cannot be matched or conflicts
            with the customer's active subscription.
        ProviderGatewayError: If the purchase cannot be fetched.
    """
    purchase = await gateway.fetch_authoritative(notification.subscription_id, notification.purchase_token)

    subscription = await _resolve_subscription(db, notification, purchase)
    if subscription is None:
        logger.info(
            "Ignoring google play notification type %s: purchase token matches no subscription",
            notification.notification_type,
        )
        return None

    plan = await _resolve_plan(db, subscription, notification.subscription_id)

    now = utcnow()
    is_entitled = purchase.expiry_time is not None and purchase.expiry_time > now

    # Validate everything before the first write.
    await ensure_provider_subscription_id_available(db, subscription, notification.purchase_token)
    _check_token_takeover(subscription, notification.purchase_token, purchase)
    if is_entitled:
        await resolve_linked_conflicts(db, subscription, purchase.linked_purchase_token, now)

    if plan.id != subscription.plan.id:
        logger.info(
            "Subscription %s switched plan %s -> %s",
            subscription.id,
            subscription.plan.provider_plan_id,
            plan.provider_plan_id,
        )
        subscription.plan = plan

    subscription.provider_subscription_id = notification.purchase_token
    if purchase.start_time is not None:
        subscription.start_at = purchase.start_time
    subscription.end_at = purchase.expiry_time or now
    subscription.is_payment_pending = is_entitled and purchase.payment_state == PAYMENT_STATE_PENDING
    subscription.is_auto_renewing = purchase.is_auto_renewing
    mark_trial_period_used(subscription.customer)
    await db.flush()

    logger.info(
        "Google play notification type %s applied to subscription %s: status=%s, end_at=%s",
        notification.notification_type,
        subscription.id,
        subscription.status.value,
        subscription.end_at,
    )

    if not purchase.is_acknowledged:
        # State is already flushed; a failed acknowledgement is retried on the
        # next notification for this purchase.
        try:
            await gateway.acknowledge(notification.subscription_id, notification.purchase_token)
        except ProviderGatewayError:
            logger.warning(
                "Failed to acknowledge google play purchase of subscription %s",
                subscription.id,
                exc_info=True,
            )

    return subscription

"""Invariants shared by the Google Play and Stripe reconciliation paths.

A customer holds at most one entitled (active or payment-pending)
subscription. Both paths check it against a fresh read of the customer's
subscriptions inside the webhook's transaction, right before writing.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import WebhookEventError
from app.models.subscription import Subscription
from app.services.subscription_service import get_active_subscriptions, get_subscription_by_provider_id

logger = logging.getLogger(__name__)


async def get_other_active_subscriptions(db: AsyncSession, subscription: Subscription) -> list[Subscription]:
    """Entitled subscriptions of the same customer, other than ``subscription``."""
    active = await get_active_subscriptions(db, subscription.customer_user_id)
    return [other for other in active if other.id != subscription.id]


async def ensure_provider_subscription_id_available(
    db: AsyncSession, subscription: Subscription, provider_subscription_id: str
) -> None:
    """Reject attaching a provider id that already belongs to another subscription."""
    owner = await get_subscription_by_provider_id(db, provider_subscription_id)
    if owner is not None and owner.id != subscription.id:
        raise WebhookEventError(
            f"provider subscription id is already attached to subscription {owner.id}"
        )


def supersede_subscription(subscription: Subscription, now: datetime, *, reason: str) -> None:
    """End an entitled subscription now, e.g. when a linked purchase replaces it."""
    subscription.end_at = now
    subscription.is_auto_renewing = False
    subscription.is_payment_pending = False
    logger.info("Subscription %s ended: %s", subscription.id, reason)


async def resolve_linked_conflicts(
    db: AsyncSession,
    subscription: Subscription,
    linked_provider_subscription_id: str | None,
    now: datetime,
) -> None:
    """Make ``subscription`` the customer's only entitled subscription.

    Another entitled subscription is ended when the incoming purchase links
    to it (upgrade, downgrade or token rotation). Any unrelated entitled
    subscription makes the purchase a double purchase, which is rejected
    before anything is changed.

    Raises:
        WebhookEventError: If an unrelated entitled subscription exists.
    """
    others = await get_other_active_subscriptions(db, subscription)
    superseded = [
        other
        for other in others
        if linked_provider_subscription_id is not None
        and other.provider_subscription_id == linked_provider_subscription_id
    ]
    unrelated = [other for other in others if other not in superseded]
    if unrelated:
        logger.warning(
            "Rejecting purchase for subscription %s: customer %s already holds active subscription(s) %s",
            subscription.id,
            subscription.customer_user_id,
            ", ".join(str(other.id) for other in unrelated),
        )
        raise WebhookEventError(
            f"customer {subscription.customer_user_id} already has an active subscription"
        )

    for other in superseded:
        supersede_subscription(other, now, reason=f"replaced by linked purchase on {subscription.id}")

"""Gift card service — lookup and redemption of prepaid subscription codes."""

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import (
    DuplicateSubscriptionError,
    GiftCardExpiredError,
    GiftCardNotFoundError,
    GiftCardRedeemedError,
)
from app.database import utcnow
from app.models.subscription import GiftCard, Subscription
from app.models.user import User
from app.services.customer_service import get_or_create_customer
from app.services.subscription_service import get_active_subscriptions

logger = logging.getLogger(__name__)


async def get_gift_card_by_code(db: AsyncSession, code: str) -> GiftCard | None:
    result = await db.execute(select(GiftCard).where(GiftCard.code == code))
    return result.scalar_one_or_none()


async def get_gift_card(db: AsyncSession, user: User, code: str) -> GiftCard:
    """Return a gift card visible to the user.

    Cards bound to another customer are reported as missing.
    """
    gift_card = await get_gift_card_by_code(db, code)
    if gift_card is None or (gift_card.customer_user_id is not None and gift_card.customer_user_id != user.id):
        raise GiftCardNotFoundError(f"gift card {code!r} not found")
    return gift_card


async def redeem_gift_card(db: AsyncSession, user: User, code: str) -> Subscription:
    """Convert a gift card into an active, non-renewing subscription.

    Raises:
        GiftCardNotFoundError: If the card does not exist or is bound to someone else.
        GiftCardRedeemedError: If the card was already redeemed.
        GiftCardExpiredError: If the card expired.
        DuplicateSubscriptionError: If the user already has an active subscription.
    """
    gift_card = await get_gift_card(db, user, code)
    if gift_card.is_redeemed:
        raise GiftCardRedeemedError(f"gift card {code!r} was already redeemed")

    now = utcnow()
    if gift_card.expires_at is not None and gift_card.expires_at <= now:
        raise GiftCardExpiredError(f"gift card {code!r} expired")

    customer = await get_or_create_customer(db, user.id)
    if await get_active_subscriptions(db, customer.user_id):
        raise DuplicateSubscriptionError(f"user {user.id} already has an active subscription")

    subscription = Subscription(
        customer=customer,
        plan=gift_card.plan,
        start_at=now,
        end_at=now + timedelta(hours=gift_card.hour_credits),
        is_auto_renewing=False,
        is_payment_pending=False,
    )
    db.add(subscription)

    gift_card.customer_user_id = customer.user_id
    gift_card.is_redeemed = True
    await db.flush()

    logger.info("Gift card %s redeemed by user %s as subscription %s", gift_card.id, user.id, subscription.id)
    return subscription

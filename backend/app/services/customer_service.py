"""Customer service — billing identities of users."""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import Customer

logger = logging.getLogger(__name__)


async def get_customer(db: AsyncSession, user_id: uuid.UUID) -> Customer | None:
    return await db.get(Customer, user_id)


async def get_or_create_customer(db: AsyncSession, user_id: uuid.UUID) -> Customer:
    """Get the user's customer row, creating it on the first purchase attempt."""
    customer = await db.get(Customer, user_id)
    if customer is not None:
        return customer

    logger.info("Creating customer for user %s", user_id)
    customer = Customer(user_id=user_id, is_trial_period_used=False)
    db.add(customer)
    await db.flush()
    return customer


async def get_customers_by_stripe_id(db: AsyncSession, stripe_customer_id: str) -> list[Customer]:
    result = await db.execute(select(Customer).where(Customer.stripe_id == stripe_customer_id))
    return list(result.scalars().all())


async def reset_stripe_id(db: AsyncSession, stripe_customer_id: str) -> int:
    """Unlink a deleted Stripe customer from local customers. Returns rows unlinked."""
    customers = await get_customers_by_stripe_id(db, stripe_customer_id)
    for customer in customers:
        customer.stripe_id = None
    await db.flush()
    return len(customers)


def mark_trial_period_used(customer: Customer) -> None:
    if not customer.is_trial_period_used:
        customer.is_trial_period_used = True
        logger.info("Trial period used by customer %s", customer.user_id)

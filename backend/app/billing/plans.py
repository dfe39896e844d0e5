"""Plan registry — the catalog of purchasable plans and lookups into it."""

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.subscription import SubscriptionPlan, SubscriptionProvider


@dataclass(frozen=True)
class PlanDefinition:
    """A catalog entry, seeded into the ``subscription_plans`` table."""

    provider: SubscriptionProvider
    provider_plan_id: str
    billing_period_months: int
    trial_period_days: int
    price_in_cents: int
    currency: str = "INR"


def get_plan_catalog() -> list[PlanDefinition]:
    """Return every plan the service sells.

    Google Play plan ids are product ids configured in the Play Console;
    Stripe plan ids are price ids taken from settings.
    """
    trial_days = settings.stripe_trial_period_days
    return [
        PlanDefinition(SubscriptionProvider.GOOGLE_PLAY, "monthly", 1, 0, 22500),
        PlanDefinition(SubscriptionProvider.GOOGLE_PLAY, "quarterly", 3, 0, 60000),
        PlanDefinition(SubscriptionProvider.GOOGLE_PLAY, "bi_yearly", 6, 0, 105000),
        PlanDefinition(SubscriptionProvider.GOOGLE_PLAY, "yearly", 12, 0, 180000),
        PlanDefinition(SubscriptionProvider.STRIPE, settings.stripe_price_id_monthly, 1, trial_days, 22500),
        PlanDefinition(SubscriptionProvider.STRIPE, settings.stripe_price_id_quarterly, 3, trial_days, 60000),
        PlanDefinition(SubscriptionProvider.STRIPE, settings.stripe_price_id_bi_yearly, 6, trial_days, 105000),
        PlanDefinition(SubscriptionProvider.STRIPE, settings.stripe_price_id_yearly, 12, trial_days, 180000),
        PlanDefinition(SubscriptionProvider.GIFT_CARD, "gift-card", 0, 0, 0),
    ]


async def seed_plans(db: AsyncSession) -> int:
    """Insert catalog plans missing from the database. Returns the number added.

    Existing rows are left untouched so plan ids stay stable for
    subscriptions that already reference them.
    """
    result = await db.execute(select(SubscriptionPlan.provider, SubscriptionPlan.provider_plan_id))
    existing = {(row.provider, row.provider_plan_id) for row in result}

    added = 0
    for definition in get_plan_catalog():
        if (definition.provider, definition.provider_plan_id) in existing:
            continue
        db.add(
            SubscriptionPlan(
                provider=definition.provider,
                provider_plan_id=definition.provider_plan_id,
                billing_period_months=definition.billing_period_months,
                trial_period_days=definition.trial_period_days,
                price_in_cents=definition.price_in_cents,
                currency=definition.currency,
            )
        )
        added += 1

    await db.flush()
    return added


async def get_plan_by_id(db: AsyncSession, plan_id: int) -> SubscriptionPlan | None:
    return await db.get(SubscriptionPlan, plan_id)


async def get_plan_by_provider_plan_id(
    db: AsyncSession, provider: SubscriptionProvider, provider_plan_id: str
) -> SubscriptionPlan | None:
    """Reverse lookup: provider product/price id -> local plan. None if not registered."""
    result = await db.execute(
        select(SubscriptionPlan).where(
            SubscriptionPlan.provider == provider,
            SubscriptionPlan.provider_plan_id == provider_plan_id,
        )
    )
    return result.scalar_one_or_none()


async def list_plans(
    db: AsyncSession, provider: SubscriptionProvider | None = None
) -> list[SubscriptionPlan]:
    """List plans, optionally of one provider, cheapest first."""
    query = select(SubscriptionPlan).order_by(
        SubscriptionPlan.provider, SubscriptionPlan.price_in_cents, SubscriptionPlan.id
    )
    if provider is not None:
        query = query.where(SubscriptionPlan.provider == provider)
    result = await db.execute(query)
    return list(result.scalars().all())

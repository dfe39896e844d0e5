"""Tests for the plan catalog and the plans endpoint."""

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.plans import get_plan_by_provider_plan_id, get_plan_catalog, list_plans, seed_plans
from app.config import settings
from app.models.subscription import SubscriptionProvider


class TestCatalog:
    def test_every_billing_period_sold_on_both_stores(self):
        catalog = get_plan_catalog()
        for provider in (SubscriptionProvider.GOOGLE_PLAY, SubscriptionProvider.STRIPE):
            periods = sorted(p.billing_period_months for p in catalog if p.provider == provider)
            assert periods == [1, 3, 6, 12]

    def test_stripe_plans_use_configured_prices_and_trial(self):
        stripe_plans = [p for p in get_plan_catalog() if p.provider == SubscriptionProvider.STRIPE]
        assert settings.stripe_price_id_monthly in {p.provider_plan_id for p in stripe_plans}
        assert all(p.trial_period_days == settings.stripe_trial_period_days for p in stripe_plans)

    def test_single_gift_card_plan(self):
        gift_card_plans = [p for p in get_plan_catalog() if p.provider == SubscriptionProvider.GIFT_CARD]
        assert len(gift_card_plans) == 1


class TestSeedPlans:
    async def test_seed_is_idempotent(self, db_session: AsyncSession):
        added = await seed_plans(db_session)
        assert added == len(get_plan_catalog())
        assert await seed_plans(db_session) == 0
        assert len(await list_plans(db_session)) == len(get_plan_catalog())

    async def test_reverse_lookup(self, db_session: AsyncSession, plans):
        plan = await get_plan_by_provider_plan_id(db_session, SubscriptionProvider.GOOGLE_PLAY, "yearly")
        assert plan.billing_period_months == 12
        assert await get_plan_by_provider_plan_id(db_session, SubscriptionProvider.STRIPE, "yearly") is None

    async def test_list_by_provider_cheapest_first(self, db_session: AsyncSession, plans):
        google_play = await list_plans(db_session, SubscriptionProvider.GOOGLE_PLAY)
        assert [p.provider_plan_id for p in google_play] == ["monthly", "quarterly", "bi_yearly", "yearly"]


class TestListPlansEndpoint:
    """Test GET /api/v1/subscriptions/plans."""

    async def test_lists_all_plans_without_auth(self, client: AsyncClient, plans):
        response = await client.get("/api/v1/subscriptions/plans")
        assert response.status_code == 200
        assert len(response.json()) == len(plans)

    async def test_filter_by_provider(self, client: AsyncClient, plans):
        response = await client.get("/api/v1/subscriptions/plans", params={"provider": "stripe"})
        assert response.status_code == 200
        data = response.json()
        assert len(data) == 4
        assert {p["provider"] for p in data} == {"STRIPE"}

    async def test_plan_fields(self, client: AsyncClient, plans):
        response = await client.get("/api/v1/subscriptions/plans", params={"provider": "GOOGLE_PLAY"})
        monthly = next(p for p in response.json() if p["provider_plan_id"] == "monthly")
        assert monthly["billing_period_months"] == 1
        assert monthly["price_in_cents"] == 22500
        assert monthly["currency"] == "INR"

    async def test_unsupported_provider(self, client: AsyncClient, plans):
        response = await client.get("/api/v1/subscriptions/plans", params={"provider": "APPLE"})
        assert response.status_code == 422

"""Tests for the subscription and customer services below the API layer."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import ProviderGatewayError
from app.database import utcnow
from app.models.subscription import SubscriptionProvider
from app.services.customer_service import get_or_create_customer, reset_stripe_id
from app.services.subscription_service import (
    SUBSCRIPTIONS_PAGE_SIZE,
    get_started_subscriptions,
    is_user_subscribed,
    on_user_deleted,
)
from factories import FakeGooglePlayGateway, create_customer, create_subscription, create_user


@pytest.fixture
def gateways(google_play_gateway: FakeGooglePlayGateway, stripe_gateway: MagicMock):
    return {
        SubscriptionProvider.GOOGLE_PLAY: google_play_gateway,
        SubscriptionProvider.STRIPE: stripe_gateway,
    }


class TestIsUserSubscribed:
    async def test_active(self, db_session: AsyncSession, gp_monthly):
        user = await create_user(db_session)
        customer = await create_customer(db_session, user)
        await create_subscription(db_session, customer, gp_monthly, provider_subscription_id="tok-1", active=True)
        assert await is_user_subscribed(db_session, user.id) is True

    async def test_expired_and_incomplete(self, db_session: AsyncSession, gp_monthly):
        user = await create_user(db_session)
        customer = await create_customer(db_session, user)
        await create_subscription(db_session, customer, gp_monthly, provider_subscription_id="tok-1", active=False)
        await create_subscription(db_session, customer, gp_monthly)
        assert await is_user_subscribed(db_session, user.id) is False

    async def test_no_customer(self, db_session: AsyncSession):
        user = await create_user(db_session)
        assert await is_user_subscribed(db_session, user.id) is False


class TestGetStartedSubscriptions:
    async def test_newest_first_without_incomplete(self, db_session: AsyncSession, gp_monthly):
        user = await create_user(db_session)
        customer = await create_customer(db_session, user)
        old = await create_subscription(db_session, customer, gp_monthly, provider_subscription_id="a", active=False)
        current = await create_subscription(db_session, customer, gp_monthly, provider_subscription_id="b", active=True)
        await create_subscription(db_session, customer, gp_monthly)

        assert await get_started_subscriptions(db_session, user.id) == [current, old]
        assert await get_started_subscriptions(db_session, user.id, only_active=True) == [current]

    async def test_pages(self, db_session: AsyncSession, gp_monthly):
        user = await create_user(db_session)
        customer = await create_customer(db_session, user)
        for index in range(SUBSCRIPTIONS_PAGE_SIZE + 1):
            subscription = await create_subscription(
                db_session, customer, gp_monthly, provider_subscription_id=f"tok-{index}", active=False
            )
            subscription.start_at -= timedelta(minutes=index)
        await db_session.flush()

        first = await get_started_subscriptions(db_session, user.id)
        second = await get_started_subscriptions(db_session, user.id, page=1)
        assert len(first) == SUBSCRIPTIONS_PAGE_SIZE
        assert [s.provider_subscription_id for s in second] == [f"tok-{SUBSCRIPTIONS_PAGE_SIZE}"]

    async def test_other_users_excluded(self, db_session: AsyncSession, gp_monthly):
        other = await create_customer(db_session, await create_user(db_session))
        await create_subscription(db_session, other, gp_monthly, provider_subscription_id="tok-1", active=True)
        user = await create_user(db_session)
        assert await get_started_subscriptions(db_session, user.id) == []


class TestOnUserDeleted:
    async def test_ends_active_subscriptions(
        self,
        db_session: AsyncSession,
        gateways,
        google_play_gateway: FakeGooglePlayGateway,
        stripe_gateway: MagicMock,
        gp_monthly,
    ):
        user = await create_user(db_session)
        customer = await create_customer(db_session, user, stripe_id="cus_1")
        subscription = await create_subscription(
            db_session, customer, gp_monthly, provider_subscription_id="tok-1", active=True
        )
        expired = await create_subscription(
            db_session, customer, gp_monthly, provider_subscription_id="tok-0", active=False
        )
        expired_end = expired.end_at

        await on_user_deleted(db_session, user.id, gateways, stripe_gateway)

        assert google_play_gateway.cancelled == [("tok-1", True)]
        assert subscription.is_active is False
        assert subscription.end_at <= utcnow()
        assert subscription.is_auto_renewing is False
        assert expired.end_at == expired_end
        stripe_gateway.reset_customer_name_and_email.assert_awaited_once_with("cus_1")

    async def test_gift_card_subscription_ended_locally(
        self, db_session: AsyncSession, gateways, stripe_gateway: MagicMock, gift_card_plan
    ):
        user = await create_user(db_session)
        customer = await create_customer(db_session, user)
        subscription = await create_subscription(
            db_session, customer, gift_card_plan, active=True, is_auto_renewing=False
        )

        await on_user_deleted(db_session, user.id, gateways, stripe_gateway)

        assert subscription.is_active is False
        stripe_gateway.reset_customer_name_and_email.assert_not_awaited()

    async def test_no_customer_is_noop(self, db_session: AsyncSession, gateways, stripe_gateway: MagicMock):
        user = await create_user(db_session)
        await on_user_deleted(db_session, user.id, gateways, stripe_gateway)
        stripe_gateway.reset_customer_name_and_email.assert_not_awaited()

    async def test_provider_failure_propagates(
        self, db_session: AsyncSession, gateways, stripe_gateway: MagicMock, stripe_monthly
    ):
        user = await create_user(db_session)
        customer = await create_customer(db_session, user, stripe_id="cus_1")
        await create_subscription(db_session, customer, stripe_monthly, provider_subscription_id="sub_1", active=True)
        stripe_gateway.cancel = AsyncMock(side_effect=ProviderGatewayError("stripe down"))

        with pytest.raises(ProviderGatewayError):
            await on_user_deleted(db_session, user.id, gateways, stripe_gateway)


class TestCustomerService:
    async def test_get_or_create_is_idempotent(self, db_session: AsyncSession):
        user = await create_user(db_session)
        first = await get_or_create_customer(db_session, user.id)
        second = await get_or_create_customer(db_session, user.id)
        assert first is second
        assert first.is_trial_period_used is False
        assert first.stripe_id is None

    async def test_reset_stripe_id(self, db_session: AsyncSession):
        customer = await create_customer(db_session, await create_user(db_session), stripe_id="cus_1")
        other = await create_customer(db_session, await create_user(db_session), stripe_id="cus_2")

        assert await reset_stripe_id(db_session, "cus_1") == 1
        assert customer.stripe_id is None
        assert other.stripe_id == "cus_2"
        assert await reset_stripe_id(db_session, "cus_unknown") == 0

"""Tests for the accounts API — passwordless sign-up/sign-in, credentials, profile."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dispatch import build_sign_in_link, get_sign_in_token_dispatcher
from app.auth.jwt import create_sign_in_token, create_token_pair, decode_token
from app.billing.exceptions import ProviderGatewayError
from app.config import settings
from app.database import utcnow
from app.main import app
from app.models.user import User
from factories import (
    FakeGooglePlayGateway,
    auth_headers_for,
    create_customer,
    create_subscription,
    create_user,
)


@pytest.fixture
def dispatcher():
    """Capture sign-in tokens instead of logging them."""
    fake = AsyncMock()
    app.dependency_overrides[get_sign_in_token_dispatcher] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_sign_in_token_dispatcher, None)


def _dispatched_token(dispatcher: AsyncMock) -> str:
    email, token = dispatcher.dispatch.await_args.args
    return token


# ---------------------------------------------------------------------------
# Sign-up / sign-in
# ---------------------------------------------------------------------------


class TestSignUp:
    """Test POST /api/v1/accounts/signUp."""

    async def test_creates_user_and_sends_link(
        self, client: AsyncClient, db_session: AsyncSession, dispatcher: AsyncMock
    ):
        response = await client.post(
            "/api/v1/accounts/signUp", json={"email": "new@test.com", "name": "New User"}
        )
        assert response.status_code == 201

        user = (await db_session.execute(select(User).where(User.email == "new@test.com"))).scalar_one()
        assert user.name == "New User"
        assert user.is_active is True

        dispatcher.dispatch.assert_awaited_once()
        email, token = dispatcher.dispatch.await_args.args
        assert email == "new@test.com"
        payload = decode_token(token)
        assert payload["type"] == "sign_in"
        assert payload["sub"] == str(user.id)

    async def test_existing_email_reuses_account(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, dispatcher: AsyncMock
    ):
        response = await client.post(
            "/api/v1/accounts/signUp", json={"email": test_user.email, "name": "Someone Else"}
        )
        assert response.status_code == 201

        users = (await db_session.execute(select(User).where(User.email == test_user.email))).scalars().all()
        assert len(users) == 1
        assert decode_token(_dispatched_token(dispatcher))["sub"] == str(test_user.id)

    async def test_inactive_account_forbidden(
        self, client: AsyncClient, db_session: AsyncSession, dispatcher: AsyncMock
    ):
        user = await create_user(db_session, is_active=False)
        response = await client.post("/api/v1/accounts/signUp", json={"email": user.email, "name": "X"})
        assert response.status_code == 403
        dispatcher.dispatch.assert_not_awaited()

    async def test_invalid_email_rejected(self, client: AsyncClient, dispatcher: AsyncMock):
        response = await client.post("/api/v1/accounts/signUp", json={"email": "not-an-email", "name": "X"})
        assert response.status_code == 422

    async def test_empty_name_rejected(self, client: AsyncClient, dispatcher: AsyncMock):
        response = await client.post("/api/v1/accounts/signUp", json={"email": "a@test.com", "name": ""})
        assert response.status_code == 422


class TestSignIn:
    """Test POST /api/v1/accounts/signIn."""

    async def test_sends_link_to_existing_user(
        self, client: AsyncClient, test_user: User, dispatcher: AsyncMock
    ):
        response = await client.post("/api/v1/accounts/signIn", json={"email": test_user.email})
        assert response.status_code == 201
        assert decode_token(_dispatched_token(dispatcher))["sub"] == str(test_user.id)

    async def test_unknown_email_looks_the_same(self, client: AsyncClient, dispatcher: AsyncMock):
        response = await client.post("/api/v1/accounts/signIn", json={"email": "nobody@test.com"})
        assert response.status_code == 201
        dispatcher.dispatch.assert_not_awaited()

    async def test_inactive_account_gets_no_link(
        self, client: AsyncClient, db_session: AsyncSession, dispatcher: AsyncMock
    ):
        user = await create_user(db_session, is_active=False)
        response = await client.post("/api/v1/accounts/signIn", json={"email": user.email})
        assert response.status_code == 201
        dispatcher.dispatch.assert_not_awaited()

    async def test_too_many_attempts(
        self, client: AsyncClient, test_user: User, dispatcher: AsyncMock
    ):
        for _ in range(settings.sign_in_max_attempts):
            response = await client.post("/api/v1/accounts/signIn", json={"email": test_user.email})
            assert response.status_code == 201

        response = await client.post("/api/v1/accounts/signIn", json={"email": test_user.email})
        assert response.status_code == 429
        retry_after = int(response.headers["retry-after"])
        assert 0 < retry_after <= settings.sign_in_attempt_window_minutes * 60
        assert dispatcher.dispatch.await_count == settings.sign_in_max_attempts

    async def test_attempts_reset_after_window(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, dispatcher: AsyncMock
    ):
        test_user.sign_in_attempts = settings.sign_in_max_attempts
        test_user.last_sign_in_attempt_at = utcnow() - timedelta(minutes=settings.sign_in_attempt_window_minutes)
        await db_session.flush()

        response = await client.post("/api/v1/accounts/signIn", json={"email": test_user.email})
        assert response.status_code == 201
        assert test_user.sign_in_attempts == 1

    async def test_sign_up_counts_attempts(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, dispatcher: AsyncMock
    ):
        test_user.sign_in_attempts = settings.sign_in_max_attempts
        test_user.last_sign_in_attempt_at = utcnow()
        await db_session.flush()

        response = await client.post(
            "/api/v1/accounts/signUp", json={"email": test_user.email, "name": test_user.name}
        )
        assert response.status_code == 429
        dispatcher.dispatch.assert_not_awaited()


class TestSignInLink:
    def test_token_is_substituted(self):
        assert build_sign_in_link("abc.def") == "http://localhost:3000/sign-in?token=abc.def"


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class TestCredentials:
    """Test POST /api/v1/accounts/credentials."""

    async def test_sign_in_token_exchanged_for_pair(self, client: AsyncClient, test_user: User):
        response = await client.post(
            "/api/v1/accounts/credentials", json={"token": create_sign_in_token(str(test_user.id))}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert decode_token(data["access_token"])["type"] == "access"
        assert decode_token(data["refresh_token"])["type"] == "refresh"

    async def test_sign_in_link_works_once(
        self, client: AsyncClient, test_user: User, dispatcher: AsyncMock
    ):
        await client.post("/api/v1/accounts/signIn", json={"email": test_user.email})
        token = _dispatched_token(dispatcher)

        first = await client.post("/api/v1/accounts/credentials", json={"token": token})
        assert first.status_code == 200
        second = await client.post("/api/v1/accounts/credentials", json={"token": token})
        assert second.status_code == 401
        assert second.json()["detail"] == "Sign-in link has already been used"

    async def test_exchange_invalidates_earlier_links(
        self, client: AsyncClient, test_user: User, dispatcher: AsyncMock
    ):
        await client.post("/api/v1/accounts/signIn", json={"email": test_user.email})
        earlier = _dispatched_token(dispatcher)
        await client.post("/api/v1/accounts/signIn", json={"email": test_user.email})
        later = _dispatched_token(dispatcher)

        assert (await client.post("/api/v1/accounts/credentials", json={"token": later})).status_code == 200
        assert (await client.post("/api/v1/accounts/credentials", json={"token": earlier})).status_code == 401

    async def test_exchange_resets_attempts(
        self, client: AsyncClient, test_user: User, dispatcher: AsyncMock
    ):
        for _ in range(settings.sign_in_max_attempts):
            await client.post("/api/v1/accounts/signIn", json={"email": test_user.email})

        response = await client.post("/api/v1/accounts/credentials", json={"token": _dispatched_token(dispatcher)})
        assert response.status_code == 200
        assert test_user.sign_in_attempts == 0
        assert test_user.last_sign_in_attempt_at is None
        assert test_user.sign_in_token_version == 1

        response = await client.post("/api/v1/accounts/signIn", json={"email": test_user.email})
        assert response.status_code == 201

    async def test_refresh_token_does_not_consume_links(
        self, client: AsyncClient, test_user: User, dispatcher: AsyncMock
    ):
        await client.post("/api/v1/accounts/signIn", json={"email": test_user.email})
        tokens = create_token_pair(str(test_user.id))

        await client.post("/api/v1/accounts/credentials", json={"token": tokens["refresh_token"]})
        response = await client.post("/api/v1/accounts/credentials", json={"token": _dispatched_token(dispatcher)})
        assert response.status_code == 200

    async def test_refresh_token_exchanged_for_pair(self, client: AsyncClient, test_user: User):
        tokens = create_token_pair(str(test_user.id))
        response = await client.post("/api/v1/accounts/credentials", json={"token": tokens["refresh_token"]})
        assert response.status_code == 200
        assert decode_token(response.json()["access_token"])["sub"] == str(test_user.id)

    async def test_access_token_not_accepted(self, client: AsyncClient, test_user: User):
        tokens = create_token_pair(str(test_user.id))
        response = await client.post("/api/v1/accounts/credentials", json={"token": tokens["access_token"]})
        assert response.status_code == 401

    async def test_garbage_token_rejected(self, client: AsyncClient):
        response = await client.post("/api/v1/accounts/credentials", json={"token": "garbage"})
        assert response.status_code == 401

    async def test_inactive_user_rejected(self, client: AsyncClient, db_session: AsyncSession):
        user = await create_user(db_session, is_active=False)
        response = await client.post(
            "/api/v1/accounts/credentials", json={"token": create_sign_in_token(str(user.id))}
        )
        assert response.status_code == 401


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


class TestProfile:
    """Test GET and DELETE /api/v1/accounts/profile."""

    async def test_get_profile(self, client: AsyncClient, test_user: User, auth_headers: dict):
        response = await client.get("/api/v1/accounts/profile", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == str(test_user.id)
        assert data["email"] == test_user.email
        assert data["is_subscribed"] is False

    async def test_profile_reports_subscription(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict, gp_monthly
    ):
        customer = await create_customer(db_session, test_user)
        await create_subscription(db_session, customer, gp_monthly, provider_subscription_id="tok", active=True)

        response = await client.get("/api/v1/accounts/profile", headers=auth_headers)
        assert response.json()["is_subscribed"] is True

    async def test_delete_profile_deactivates_user(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict
    ):
        response = await client.delete("/api/v1/accounts/profile", headers=auth_headers)
        assert response.status_code == 204
        assert test_user.is_active is False

        response = await client.get("/api/v1/accounts/profile", headers=auth_headers)
        assert response.status_code == 401

    async def test_delete_profile_ends_subscriptions(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        google_play_gateway: FakeGooglePlayGateway,
        stripe_gateway,
        gp_monthly,
    ):
        user = await create_user(db_session)
        customer = await create_customer(db_session, user, stripe_id="cus_123")
        subscription = await create_subscription(
            db_session, customer, gp_monthly, provider_subscription_id="tok-1", active=True
        )

        response = await client.delete("/api/v1/accounts/profile", headers=auth_headers_for(user))
        assert response.status_code == 204
        assert google_play_gateway.cancelled == [("tok-1", True)]
        assert subscription.is_active is False
        assert subscription.is_auto_renewing is False
        stripe_gateway.reset_customer_name_and_email.assert_awaited_once_with("cus_123")

    async def test_delete_profile_provider_failure(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        google_play_gateway: FakeGooglePlayGateway,
        gp_monthly,
    ):
        user = await create_user(db_session)
        customer = await create_customer(db_session, user)
        await create_subscription(db_session, customer, gp_monthly, provider_subscription_id="tok-1", active=True)
        google_play_gateway.fail_cancel = True

        response = await client.delete("/api/v1/accounts/profile", headers=auth_headers_for(user))
        assert response.status_code == 502
        assert user.is_active is True

    async def test_delete_profile_stripe_failure(
        self, client: AsyncClient, db_session: AsyncSession, stripe_gateway
    ):
        user = await create_user(db_session)
        await create_customer(db_session, user, stripe_id="cus_123")
        stripe_gateway.reset_customer_name_and_email.side_effect = ProviderGatewayError("stripe down")

        response = await client.delete("/api/v1/accounts/profile", headers=auth_headers_for(user))
        assert response.status_code == 502

"""Provider gateway interface and the per-provider lookup table.

Routers receive gateways through FastAPI dependencies so tests can swap
them with ``app.dependency_overrides``.
"""

from functools import lru_cache
from typing import Protocol

from fastapi import Depends

from app.billing.google_play_client import GooglePlayGateway
from app.billing.stripe_client import StripeGateway
from app.config import settings
from app.models.subscription import SubscriptionProvider


class ProviderGateway(Protocol):
    """Commands the billing engine can issue to an external provider."""

    async def fetch_authoritative(self, provider_plan_id: str, provider_subscription_id: str): ...

    async def acknowledge(self, provider_plan_id: str, provider_subscription_id: str) -> None: ...

    async def cancel(
        self, provider_plan_id: str, provider_subscription_id: str, *, immediately: bool = False
    ) -> None: ...

    async def refund(self, provider_plan_id: str, provider_subscription_id: str) -> None: ...


# Gift card subscriptions have no upstream provider and thus no entry.
ProviderGateways = dict[SubscriptionProvider, ProviderGateway]


@lru_cache
def get_stripe_gateway() -> StripeGateway:
    """Return the process-wide Stripe gateway built from settings."""
    return StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret)


@lru_cache
def get_google_play_gateway() -> GooglePlayGateway:
    """Return the process-wide Google Play gateway built from settings."""
    return GooglePlayGateway(
        settings.google_play_package_name,
        api_url=settings.google_play_api_url,
        service_account_file=settings.google_play_service_account_file or None,
    )


def get_provider_gateways(
    google_play: GooglePlayGateway = Depends(get_google_play_gateway),
    stripe: StripeGateway = Depends(get_stripe_gateway),
) -> ProviderGateways:
    return {
        SubscriptionProvider.GOOGLE_PLAY: google_play,
        SubscriptionProvider.STRIPE: stripe,
    }

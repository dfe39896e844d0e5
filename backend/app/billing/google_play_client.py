"""Async Google Play Developer API gateway (Android Publisher v3)."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import google.auth
import google.auth.exceptions
import httpx
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from app.billing.exceptions import ProviderGatewayError

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"

# SubscriptionPurchase.paymentState
PAYMENT_STATE_PENDING = 0
# SubscriptionPurchase.acknowledgementState
ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED = 1


def _millis_to_naive(value) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class SubscriptionPurchase:
    """The fields of a Google Play ``SubscriptionPurchase`` resource the engine reads."""

    start_time: datetime | None
    expiry_time: datetime | None
    payment_state: int | None
    acknowledgement_state: int
    is_auto_renewing: bool
    linked_purchase_token: str | None
    obfuscated_external_account_id: str | None

    @classmethod
    def from_api(cls, payload: dict) -> "SubscriptionPurchase":
        return cls(
            start_time=_millis_to_naive(payload.get("startTimeMillis")),
            expiry_time=_millis_to_naive(payload.get("expiryTimeMillis")),
            payment_state=payload.get("paymentState"),
            acknowledgement_state=int(payload.get("acknowledgementState") or 0),
            is_auto_renewing=bool(payload.get("autoRenewing", True)),
            linked_purchase_token=payload.get("linkedPurchaseToken"),
            obfuscated_external_account_id=payload.get("obfuscatedExternalAccountId"),
        )

    @property
    def is_acknowledged(self) -> bool:
        return self.acknowledgement_state == ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED


class GooglePlayGateway:
    """Reads subscription purchases and issues commands for one application package.

    Credentials come from ``service_account_file`` when given, otherwise from
    application default credentials. Both are refreshed lazily in a worker
    thread because google-auth only ships a blocking transport.
    """

    def __init__(
        self,
        package_name: str,
        *,
        api_url: str = "https://androidpublisher.googleapis.com/androidpublisher/v3",
        service_account_file: str | None = None,
        credentials=None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._package_name = package_name
        self._service_account_file = service_account_file
        self._credentials = credentials
        self._http = httpx.AsyncClient(
            base_url=f"{api_url.rstrip('/')}/applications/{package_name}/",
            transport=transport,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def _load_credentials(self):
        if self._service_account_file:
            return service_account.Credentials.from_service_account_file(
                self._service_account_file, scopes=[ANDROID_PUBLISHER_SCOPE]
            )
        credentials, _ = google.auth.default(scopes=[ANDROID_PUBLISHER_SCOPE])
        return credentials

    async def _access_token(self) -> str:
        try:
            if self._credentials is None:
                self._credentials = await asyncio.to_thread(self._load_credentials)
            if not self._credentials.valid:
                await asyncio.to_thread(self._credentials.refresh, GoogleAuthRequest())
        except google.auth.exceptions.GoogleAuthError as e:
            raise ProviderGatewayError("google play credentials are unavailable") from e

        token = str(getattr(self._credentials, "token", "") or "").strip()
        if not token:
            raise ProviderGatewayError("failed to obtain google play access token")
        return token

    async def _request(self, method: str, path: str) -> dict:
        token = await self._access_token()
        try:
            response = await self._http.request(method, path, headers={"Authorization": f"Bearer {token}"})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Google Play API %s %s failed with HTTP %s: %s",
                method,
                path,
                e.response.status_code,
                e.response.text,
            )
            raise ProviderGatewayError(
                f"google play api request failed with http {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderGatewayError("unable to reach google play api") from e

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderGatewayError("invalid response from google play api") from e
        if not isinstance(payload, dict):
            raise ProviderGatewayError("invalid response from google play api")
        return payload

    @staticmethod
    def _purchase_path(subscription_id: str, purchase_token: str) -> str:
        return f"purchases/subscriptions/{subscription_id}/tokens/{purchase_token}"

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------

    async def get_subscription_purchase(self, subscription_id: str, purchase_token: str) -> SubscriptionPurchase:
        payload = await self._request("GET", self._purchase_path(subscription_id, purchase_token))
        return SubscriptionPurchase.from_api(payload)

    async def acknowledge_purchase(self, subscription_id: str, purchase_token: str) -> None:
        await self._request("POST", f"{self._purchase_path(subscription_id, purchase_token)}:acknowledge")
        logger.info("Acknowledged google play purchase for %s", subscription_id)

    async def cancel_subscription(self, subscription_id: str, purchase_token: str) -> None:
        """Stop auto-renewal. No-op when the purchase is already non-renewing."""
        purchase = await self.get_subscription_purchase(subscription_id, purchase_token)
        if not purchase.is_auto_renewing:
            return
        await self._request("POST", f"{self._purchase_path(subscription_id, purchase_token)}:cancel")
        logger.info("Cancelled google play subscription %s", subscription_id)

    async def revoke_subscription(self, subscription_id: str, purchase_token: str) -> None:
        """Refund the purchase and end the subscription immediately."""
        await self._request("POST", f"{self._purchase_path(subscription_id, purchase_token)}:revoke")
        logger.info("Revoked google play subscription %s", subscription_id)

    # ------------------------------------------------------------------
    # ProviderGateway
    # ------------------------------------------------------------------

    async def fetch_authoritative(self, provider_plan_id: str, provider_subscription_id: str) -> SubscriptionPurchase:
        return await self.get_subscription_purchase(provider_plan_id, provider_subscription_id)

    async def acknowledge(self, provider_plan_id: str, provider_subscription_id: str) -> None:
        await self.acknowledge_purchase(provider_plan_id, provider_subscription_id)

    async def cancel(
        self, provider_plan_id: str, provider_subscription_id: str, *, immediately: bool = False
    ) -> None:
        # Google Play only ends a subscription early together with a refund,
        # so an immediate cancellation still only stops renewal upstream.
        await self.cancel_subscription(provider_plan_id, provider_subscription_id)

    async def refund(self, provider_plan_id: str, provider_subscription_id: str) -> None:
        await self.revoke_subscription(provider_plan_id, provider_subscription_id)

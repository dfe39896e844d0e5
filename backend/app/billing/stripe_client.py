"""Async Stripe API gateway.

``StripeGateway`` owns its ``StripeClient`` and webhook secret; nothing here
touches the process-wide ``stripe.api_key``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import stripe
from stripe import StripeClient

from app.billing.exceptions import ProviderGatewayError, WebhookPayloadError

logger = logging.getLogger(__name__)

# Statuses in which Stripe still grants (or is trying to collect for) the subscription.
ENTITLED_STATUSES = frozenset({"trialing", "active", "past_due"})


def _ts_to_naive(ts: int | None) -> datetime | None:
    """Convert Stripe Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def _get_field(obj, name: str):
    """Read an optional field from a Stripe object, ``None`` when absent."""
    try:
        return obj[name]
    except (KeyError, AttributeError, TypeError):
        return None


def _get_items(stripe_sub) -> list:
    """Get the subscription items, using bracket notation to avoid
    collision with Python dict .items() in newer Stripe API versions.
    """
    sub_items = _get_field(stripe_sub, "items")
    if sub_items and sub_items.data:
        return list(sub_items.data)
    return []


@dataclass(frozen=True)
class StripeSubscription:
    """The fields of a Stripe subscription the reconciliation engine reads."""

    id: str
    status: str
    start_date: datetime | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    ended_at: datetime | None
    cancel_at_period_end: bool
    price_ids: tuple[str, ...]

    @classmethod
    def from_stripe(cls, stripe_sub) -> "StripeSubscription":
        """Normalise a ``stripe.Subscription``.

        In Stripe API 2025-08-27 (basil), current_period_start/end moved
        from the subscription object to the subscription item.
        """
        items = _get_items(stripe_sub)
        period_source = items[0] if items and _get_field(items[0], "current_period_end") else stripe_sub
        return cls(
            id=stripe_sub.id,
            status=stripe_sub.status,
            start_date=_ts_to_naive(_get_field(stripe_sub, "start_date")),
            current_period_start=_ts_to_naive(_get_field(period_source, "current_period_start")),
            current_period_end=_ts_to_naive(_get_field(period_source, "current_period_end")),
            ended_at=_ts_to_naive(_get_field(stripe_sub, "ended_at")),
            cancel_at_period_end=bool(_get_field(stripe_sub, "cancel_at_period_end")),
            price_ids=tuple(item.price.id for item in items),
        )


@dataclass(frozen=True)
class CheckoutSessionResult:
    url: str
    subscription_id: str | None


class StripeGateway:
    """Reads subscriptions from Stripe and issues cancel/refund commands."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        client: StripeClient | None = None,
    ) -> None:
        self._webhook_secret = webhook_secret
        self._client = client or StripeClient(secret_key, http_client=stripe.HTTPXClient())

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def decode_webhook_payload(self, payload: bytes, signature: str) -> stripe.Event:
        """Verify the ``Stripe-Signature`` header and construct the event."""
        try:
            return self._client.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookPayloadError("stripe webhook signature verification failed") from e
        except ValueError as e:
            raise WebhookPayloadError("stripe webhook payload is not valid json") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_subscription(self, subscription_id: str) -> StripeSubscription:
        """Retrieve a Stripe subscription by ID."""
        try:
            stripe_sub = await self._client.v1.subscriptions.retrieve_async(subscription_id)
        except stripe.StripeError as e:
            raise ProviderGatewayError(f"failed to retrieve stripe subscription {subscription_id}") from e
        return StripeSubscription.from_stripe(stripe_sub)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self,
        *,
        success_url: str,
        cancel_url: str,
        price_id: str,
        client_reference_id: str,
        customer_email: str | None = None,
        stripe_customer_id: str | None = None,
        trial_period_days: int | None = None,
    ) -> CheckoutSessionResult:
        """Create a Stripe Checkout Session in subscription mode.

        ``client_reference_id`` carries the local subscription id and comes
        back on ``checkout.session.completed``. Stripe accepts either an
        existing customer or an email to create one with, not both.
        """
        params: dict = {
            "mode": "subscription",
            "client_reference_id": client_reference_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if stripe_customer_id:
            params["customer"] = stripe_customer_id
        elif customer_email:
            params["customer_email"] = customer_email
        if trial_period_days:
            params["subscription_data"] = {"trial_period_days": trial_period_days}

        logger.info("Creating checkout session for subscription %s, price %s", client_reference_id, price_id)
        try:
            session = await self._client.v1.checkout.sessions.create_async(params=params)
        except stripe.StripeError as e:
            raise ProviderGatewayError("failed to create stripe checkout session") from e
        return CheckoutSessionResult(url=session.url, subscription_id=_get_field(session, "subscription"))

    async def create_customer_portal_session(self, customer_id: str, return_url: str | None) -> str:
        """Create a Stripe Customer Portal session and return its URL."""
        params = {"customer": customer_id}
        if return_url:
            params["return_url"] = return_url
        try:
            session = await self._client.v1.billing_portal.sessions.create_async(params=params)
        except stripe.StripeError as e:
            raise ProviderGatewayError(f"failed to create portal session for customer {customer_id}") from e
        return session.url

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def cancel_subscription(self, subscription_id: str, immediately: bool = False) -> None:
        """Cancel a subscription now or at the end of its billing cycle.

        Already canceled subscriptions are left alone.
        """
        try:
            stripe_sub = await self._client.v1.subscriptions.retrieve_async(subscription_id)
            if stripe_sub.status == "canceled":
                return
            if immediately:
                await self._client.v1.subscriptions.cancel_async(subscription_id)
            else:
                await self._client.v1.subscriptions.update_async(
                    subscription_id, params={"cancel_at_period_end": True}
                )
        except stripe.StripeError as e:
            raise ProviderGatewayError(f"failed to cancel stripe subscription {subscription_id}") from e
        logger.info("Cancelled stripe subscription %s (immediately=%s)", subscription_id, immediately)

    async def refund_subscription(self, subscription_id: str) -> None:
        """Refund the latest payment of a subscription and cancel it immediately."""
        try:
            stripe_sub = await self._client.v1.subscriptions.retrieve_async(
                subscription_id,
                params={"expand": ["latest_invoice.payments"]},
            )
            for refund_params in _latest_invoice_refund_params(stripe_sub):
                try:
                    await self._client.v1.refunds.create_async(params=refund_params)
                except stripe.InvalidRequestError as e:
                    if e.code != "charge_already_refunded":
                        raise
                    logger.info("Stripe subscription %s payment already refunded", subscription_id)

            if stripe_sub.status != "canceled":
                await self._client.v1.subscriptions.cancel_async(subscription_id)
        except stripe.StripeError as e:
            raise ProviderGatewayError(f"failed to refund stripe subscription {subscription_id}") from e
        logger.info("Refunded stripe subscription %s", subscription_id)

    async def reset_customer_name_and_email(self, customer_id: str) -> None:
        """Blank the personal details on a Stripe customer (used on account deletion)."""
        try:
            await self._client.v1.customers.update_async(customer_id, params={"name": "", "email": ""})
        except stripe.StripeError as e:
            raise ProviderGatewayError(f"failed to reset stripe customer {customer_id}") from e

    # ------------------------------------------------------------------
    # ProviderGateway
    # ------------------------------------------------------------------

    async def fetch_authoritative(self, provider_plan_id: str, provider_subscription_id: str) -> StripeSubscription:
        return await self.get_subscription(provider_subscription_id)

    async def acknowledge(self, provider_plan_id: str, provider_subscription_id: str) -> None:
        """Stripe purchases need no acknowledgement."""

    async def cancel(
        self, provider_plan_id: str, provider_subscription_id: str, *, immediately: bool = False
    ) -> None:
        await self.cancel_subscription(provider_subscription_id, immediately=immediately)

    async def refund(self, provider_plan_id: str, provider_subscription_id: str) -> None:
        await self.refund_subscription(provider_subscription_id)


def _latest_invoice_refund_params(stripe_sub) -> list[dict]:
    """Build refund params for the paid payments of a subscription's latest invoice.

    Newer API versions list payments on the invoice; older ones expose the
    charge or payment intent on the invoice directly.
    """
    invoice = _get_field(stripe_sub, "latest_invoice")
    if not invoice or isinstance(invoice, str):
        return []

    params: list[dict] = []
    payments = _get_field(invoice, "payments")
    for invoice_payment in (payments.data if payments else []):
        if _get_field(invoice_payment, "status") not in (None, "paid"):
            continue
        payment = _get_field(invoice_payment, "payment")
        payment_intent = _get_field(payment, "payment_intent")
        charge = _get_field(payment, "charge")
        if payment_intent:
            params.append({"payment_intent": _get_field(payment_intent, "id") or payment_intent})
        elif charge:
            params.append({"charge": _get_field(charge, "id") or charge})

    if not params:
        charge = _get_field(invoice, "charge")
        payment_intent = _get_field(invoice, "payment_intent")
        if charge:
            params.append({"charge": charge})
        elif payment_intent:
            params.append({"payment_intent": payment_intent})
    return params

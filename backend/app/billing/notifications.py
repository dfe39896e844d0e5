"""Webhook payload normalisation for Google Play and Stripe.

Both parsers only extract references to provider objects. Reconciliation
always re-fetches the referenced object from the provider and never trusts
state embedded in a notification.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any

from app.billing.exceptions import WebhookPayloadError

logger = logging.getLogger(__name__)

# Google Play SubscriptionNotification.notificationType values
# https://developer.android.com/google/play/billing/rtdn-reference
SUBSCRIPTION_RECOVERED = 1
SUBSCRIPTION_RENEWED = 2
SUBSCRIPTION_CANCELED = 3
SUBSCRIPTION_PURCHASED = 4
SUBSCRIPTION_ON_HOLD = 5
SUBSCRIPTION_IN_GRACE_PERIOD = 6
SUBSCRIPTION_RESTARTED = 7
SUBSCRIPTION_PRICE_CHANGE_CONFIRMED = 8
SUBSCRIPTION_DEFERRED = 9
SUBSCRIPTION_PAUSED = 10
SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED = 11
SUBSCRIPTION_REVOKED = 12
SUBSCRIPTION_EXPIRED = 13

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
CUSTOMER_DELETED = "customer.deleted"
SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "customer.subscription.pending_update_applied",
        "customer.subscription.pending_update_expired",
        "customer.subscription.trial_will_end",
    }
)
STRIPE_EVENT_TYPES = SUBSCRIPTION_EVENT_TYPES | {CHECKOUT_SESSION_COMPLETED, CUSTOMER_DELETED}


# ---------------------------------------------------------------------------
# Google Play
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GooglePlayNotification:
    notification_type: int
    subscription_id: str
    purchase_token: str

    @property
    def is_new_purchase(self) -> bool:
        return self.notification_type == SUBSCRIPTION_PURCHASED


def _require(container: dict, key: str, expected: type) -> Any:
    value = container.get(key)
    # bool is an int subclass; a JSON true is never a notification type
    if not isinstance(value, expected) or isinstance(value, bool):
        raise WebhookPayloadError(f"subscriptionNotification.{key} is missing or is not a {expected.__name__}")
    return value


def parse_google_play_notification(payload: Any) -> GooglePlayNotification | None:
    """Parse a Pub/Sub push envelope carrying a real-time developer notification.

    Returns ``None`` for notifications without a ``subscriptionNotification``
    (test notifications, one-time products).

    Raises:
        WebhookPayloadError: If the envelope or the notification is malformed.
    """
    message = payload.get("message") if isinstance(payload, dict) else None
    data = message.get("data") if isinstance(message, dict) else None
    if not isinstance(data, str):
        raise WebhookPayloadError("message.data is missing or is not a string")

    try:
        decoded = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise WebhookPayloadError("message.data is not valid base64") from e

    try:
        developer_notification = json.loads(decoded)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise WebhookPayloadError("message.data is not valid json") from e
    if not isinstance(developer_notification, dict):
        raise WebhookPayloadError("developer notification is not a json object")

    subscription_notification = developer_notification.get("subscriptionNotification")
    if subscription_notification is None:
        logger.debug("Ignoring google play notification without subscriptionNotification")
        return None
    if not isinstance(subscription_notification, dict):
        raise WebhookPayloadError("subscriptionNotification is not a json object")

    return GooglePlayNotification(
        notification_type=_require(subscription_notification, "notificationType", int),
        subscription_id=_require(subscription_notification, "subscriptionId", str),
        purchase_token=_require(subscription_notification, "purchaseToken", str),
    )


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StripeCheckoutSession:
    id: str
    mode: str | None
    status: str | None
    payment_status: str | None
    customer_id: str | None
    subscription_id: str | None
    client_reference_id: str | None

    @classmethod
    def from_stripe(cls, session) -> "StripeCheckoutSession":
        return cls(
            id=session["id"],
            mode=_ref(session, "mode"),
            status=_ref(session, "status"),
            payment_status=_ref(session, "payment_status"),
            customer_id=_ref(session, "customer"),
            subscription_id=_ref(session, "subscription"),
            client_reference_id=_ref(session, "client_reference_id"),
        )


@dataclass(frozen=True)
class StripeNotification:
    event_id: str
    event_type: str
    # id of the subscription or customer the event is about
    object_id: str
    checkout_session: StripeCheckoutSession | None = None

    @property
    def is_subscription_event(self) -> bool:
        return self.event_type in SUBSCRIPTION_EVENT_TYPES


def _ref(obj, key: str) -> str | None:
    """Read an optional field that may be an id or an expanded object."""
    try:
        value = obj[key]
    except (KeyError, AttributeError):
        return None
    if value is None or isinstance(value, str):
        return value
    try:
        return value["id"]
    except (KeyError, AttributeError, TypeError):
        return None


def parse_stripe_event(gateway, payload: bytes, signature: str | None) -> StripeNotification | None:
    """Verify a Stripe webhook delivery and reduce it to a notification.

    ``gateway`` is a :class:`~app.billing.stripe_client.StripeGateway`. The
    signature is verified before any field of the payload is read.

    Returns ``None`` for event types the billing engine does not handle.

    Raises:
        WebhookPayloadError: If the signature header is missing or does not
            verify, or the payload is malformed.
    """
    if not signature:
        raise WebhookPayloadError("missing Stripe-Signature header")
    event = gateway.decode_webhook_payload(payload, signature)

    if event.type not in STRIPE_EVENT_TYPES:
        logger.debug("Ignoring stripe event %s of type %s", event.id, event.type)
        return None

    data_object = event.data.object
    try:
        object_id = data_object["id"]
    except (KeyError, AttributeError) as e:
        raise WebhookPayloadError(f"stripe event {event.id} carries an object without id") from e

    checkout_session = None
    if event.type == CHECKOUT_SESSION_COMPLETED:
        checkout_session = StripeCheckoutSession.from_stripe(data_object)

    return StripeNotification(
        event_id=event.id,
        event_type=event.type,
        object_id=object_id,
        checkout_session=checkout_session,
    )

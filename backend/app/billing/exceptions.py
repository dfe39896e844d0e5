"""Billing error taxonomy.

Webhook processing distinguishes three kinds of failure:

* ``WebhookPayloadError``: the input is malformed or cannot be verified.
  Re-processing the same bytes will never succeed.
* ``WebhookEventError``: the input is well formed but does not match local
  state, or it conflicts with it.
* ``ProviderGatewayError``: talking to Google Play or Stripe failed. Usually
  transient.

The remaining classes are raised by the subscription command service and
mapped to HTTP status codes by the routers.
"""


class BillingError(Exception):
    """Base class for all billing errors."""


class WebhookPayloadError(BillingError):
    """Webhook payload is malformed or its signature does not verify."""


class WebhookEventError(BillingError):
    """Webhook event does not match local state or conflicts with it."""


class ProviderGatewayError(BillingError):
    """Request to an external billing provider failed."""


class SubscriptionPlanNotFoundError(BillingError):
    pass


class UnsupportedSubscriptionPlanProviderError(BillingError):
    pass


class SubscriptionFlowParamsError(BillingError):
    """Parameters required to start a purchase flow are missing."""


class DuplicateSubscriptionError(BillingError):
    """Customer already holds an active or payment-pending subscription."""


class SubscriptionNotFoundError(BillingError):
    pass


class SubscriptionStateError(BillingError):
    """Operation is not allowed on the subscription in its current state."""


class GiftCardNotFoundError(BillingError):
    pass


class GiftCardRedeemedError(BillingError):
    pass


class GiftCardExpiredError(BillingError):
    pass

"""Billing webhook endpoints — Google Play real-time developer notifications and Stripe events."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import (
    BillingError,
    ProviderGatewayError,
    WebhookEventError,
    WebhookPayloadError,
)
from app.billing.gateways import get_google_play_gateway, get_stripe_gateway
from app.billing.google_play import handle_google_play_notification
from app.billing.google_play_client import GooglePlayGateway
from app.billing.notifications import parse_google_play_notification, parse_stripe_event
from app.billing.stripe_client import StripeGateway
from app.billing.webhooks import handle_stripe_notification
from app.database import get_db
from app.schemas.billing import WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["webhooks"])


@router.post("/googlePlay/webhook", response_model=WebhookResponse)
async def google_play_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: GooglePlayGateway = Depends(get_google_play_gateway),
) -> WebhookResponse:
    """Receive Google Play notifications pushed by Cloud Pub/Sub.

    Always answers 200: Pub/Sub would otherwise redeliver the same message
    until it expires, and redelivery cannot fix a failed notification.
    Failures are logged and the notification's changes are rolled back.
    """
    try:
        notification = parse_google_play_notification(json.loads(await request.body()))
    except (ValueError, WebhookPayloadError):
        logger.warning("Discarding malformed google play notification", exc_info=True)
        return WebhookResponse(status="rejected")

    if notification is None:
        return WebhookResponse(status="ignored")

    try:
        async with db.begin_nested():
            await handle_google_play_notification(db, notification, gateway)
    except (WebhookEventError, ProviderGatewayError):
        logger.warning(
            "Failed to process google play notification type %s for %s",
            notification.notification_type,
            notification.subscription_id,
            exc_info=True,
        )
        return WebhookResponse(status="failed")
    except Exception:
        logger.exception("Error processing google play notification for %s", notification.subscription_id)
        return WebhookResponse(status="failed")

    return WebhookResponse(status="processed")


@router.post("/stripe/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> WebhookResponse:
    """Receive and process Stripe webhook events."""
    # Raw body is required for signature verification
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        notification = parse_stripe_event(gateway, payload, signature)
        if notification is None:
            return WebhookResponse(status="ignored")
        await handle_stripe_notification(db, notification, gateway)
    except WebhookPayloadError as e:
        logger.warning("Invalid stripe webhook payload: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e
    except WebhookEventError as e:
        logger.warning("Failed to process stripe webhook event: %s", e)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Webhook event could not be processed",
        ) from e
    except ProviderGatewayError as e:
        logger.error("Stripe request failed while processing webhook: %s", e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Billing provider request failed",
        ) from e
    except BillingError as e:
        logger.exception("Error processing stripe webhook")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return WebhookResponse(status="processed")

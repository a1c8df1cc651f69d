"""
Stripe Webhook Handler

Receives Stripe billing lifecycle events. Deliveries with a missing or
invalid signature are rejected with 400; every verified delivery is
acknowledged with 200, whatever its handler does.
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_billing_services, get_webhook_verifier
from api.schemas import WebhookAcknowledgement
from config.settings import settings
from services.container import BillingServices
from services.verifier import WebhookVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{settings.api_prefix}/webhooks", tags=["webhooks"])


@router.post(
    "/stripe",
    response_model=WebhookAcknowledgement,
    response_model_exclude_none=True,
)
async def stripe_webhook(
    request: Request,
    verifier: WebhookVerifier = Depends(get_webhook_verifier),
    services: BillingServices = Depends(get_billing_services),
):
    """
    Handle Stripe webhook events

    The signature is verified against the raw body before anything is
    parsed. Already processed event ids are acknowledged without running
    their handler again.
    """
    # Verify before touching the database
    payload = await request.body()
    event = verifier.verify_and_parse(payload, request.headers.get("stripe-signature"))

    logger.info(
        f"Received Stripe webhook: {event.type}",
        extra={"stripe_event_id": event.id, "event_type": event.type},
    )

    # Claim the event id; database calls run off the event loop
    claimed = await asyncio.to_thread(services.events.begin, event.id, event.type)
    if not claimed:
        logger.info(
            f"Duplicate delivery of {event.id}, skipping",
            extra={"stripe_event_id": event.id},
        )
        return WebhookAcknowledgement(received=True, duplicate=True)

    await asyncio.to_thread(
        services.audit.log_webhook_received,
        event.id,
        event.type,
        ip_address=request.client.host if request.client else None,
    )

    result = await services.dispatcher.dispatch(event)
    await asyncio.to_thread(
        services.events.mark_finished, event.id, result.success, result.error
    )

    if not result.success:
        logger.error(
            f"Webhook {event.id} ({event.type}) handler failed: {result.error}",
            extra={"stripe_event_id": event.id},
        )

    return WebhookAcknowledgement(received=True)

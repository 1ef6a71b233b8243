"""Stripe webhook API routes"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from app.core.config import settings
from app.core.logging import security_logger, webhook_logger
from app.core.metrics import webhook_received_counter, webhook_rejected_counter
from app.schemas.webhooks import StripeWebhookEvent
from app.services.stripe_service import (
    PaymentProvider, WebhookVerificationError, _get_stripe_value, parse_event_body, verify_webhook_signature
)
from app.tasks.webhook_worker import WebhookWorkerPool

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


def get_webhook_pool(request: Request) -> WebhookWorkerPool:
    return request.app.state.webhook_pool


def get_payment_provider(request: Request) -> PaymentProvider:
    return request.app.state.payment_provider


@router.post("/stripe")
async def stripe_webhook(request: Request, pool: WebhookWorkerPool = Depends(get_webhook_pool)):
    """Receive a Stripe webhook delivery

    Responds as soon as the event is queued; processing happens in the worker
    pool. The body is read as raw bytes since the signature covers the exact
    payload.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    verified = True
    try:
        body = verify_webhook_signature(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except WebhookVerificationError as e:
        if not settings.unverified_webhooks_allowed:
            security_logger.warning(f"Rejected Stripe webhook: {e}")
            webhook_rejected_counter.labels(reason="verification").inc()
            raise HTTPException(400, f"Webhook Error: {e}")

        # Development only: accept the unverified body
        security_logger.warning(f"Webhook signature verification failed ({e}); processing unverified body")
        try:
            body = parse_event_body(payload)
        except WebhookVerificationError as parse_error:
            webhook_rejected_counter.labels(reason="payload").inc()
            raise HTTPException(400, f"Webhook Error: {parse_error}")
        verified = False

    try:
        event = StripeWebhookEvent.from_payload(body)
    except ValidationError as e:
        security_logger.warning(f"Rejected malformed webhook event: {e.error_count()} invalid field(s)")
        webhook_rejected_counter.labels(reason="payload").inc()
        raise HTTPException(400, "Webhook Error: malformed event")

    webhook_logger.info(
        f"Received {event.type} ({event.id}) for {event.account or 'platform'}"
        + ("" if verified else " [unverified]")
    )

    try:
        queued = pool.submit(event)
    except RuntimeError as e:
        logger.error(f"Cannot queue webhook {event.id}: {e}")
        queued = False

    if not queued:
        webhook_rejected_counter.labels(reason="queue_full").inc()
        raise HTTPException(503, "Webhook queue is full, retry later")

    webhook_received_counter.labels(event_type=event.type, verified=str(verified).lower()).inc()
    return {"received": True}


@router.get("/stripe/test")
def stripe_webhook_test(provider: PaymentProvider = Depends(get_payment_provider)):
    """Report webhook configuration, for checking a deployment by hand"""
    account_id = None
    if provider.configured:
        try:
            account_id = _get_stripe_value(provider.retrieve_account(), 'id')
        except Exception as e:
            logger.warning(f"Could not retrieve Stripe account: {e}")

    return {
        "status": "ok",
        "webhook_secret_configured": bool(settings.STRIPE_WEBHOOK_SECRET),
        "stripe_configured": provider.configured,
        "account_id": account_id,
        "environment": settings.ENVIRONMENT,
        "unverified_webhooks_allowed": settings.unverified_webhooks_allowed,
    }

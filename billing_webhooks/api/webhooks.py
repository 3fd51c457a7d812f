"""Stripe webhook endpoint"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from billing_webhooks.core.errors import ConfigurationError, VerificationError
from billing_webhooks.services.webhook_service import WebhookProcessor

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


def get_webhook_processor(request: Request) -> WebhookProcessor:
    """Dependency: the processor built at startup"""
    return request.app.state.webhook_processor


@router.post("/stripe")
async def stripe_webhook(request: Request, processor: WebhookProcessor = Depends(get_webhook_processor)):
    """Handle Stripe webhook events

    Note: the body must reach this route as raw bytes; the signature covers
    the exact bytes Stripe sent.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        await processor.process_with_retry(payload, sig_header)
    except VerificationError as e:
        logger.warning(f"Rejected webhook: {e}")
        raise HTTPException(400, str(e))
    except ConfigurationError as e:
        logger.error(f"Webhook endpoint misconfigured: {e}")
        raise HTTPException(500, "Webhook endpoint is not configured")
    except Exception as e:
        # Non-2xx makes Stripe redeliver later
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        raise HTTPException(500, "Webhook processing failed")

    return {"status": "success"}

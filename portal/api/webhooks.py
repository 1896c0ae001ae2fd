"""
Stripe webhook endpoint.

Signature failures are the only non-2xx answer; once verified, every event is
acknowledged so Stripe does not retry work that already ran (or failed and was
recorded for repair).
"""
import logging

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from portal.api.deps import get_webhook_reconciler
from portal.core.errors import ValidationError
from portal.features.billing.provider import BillingWebhookError
from portal.features.billing.webhooks import BillingWebhookReconciler

logger = logging.getLogger("portal.billing.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request, reconciler: BillingWebhookReconciler = Depends(get_webhook_reconciler)):
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    try:
        outcome = await run_in_threadpool(reconciler.handle, headers, body)
    except BillingWebhookError as e:
        logger.warning("webhook.rejected", extra={"error": str(e)})
        raise ValidationError("Webhook verification failed", code="invalid_signature", details=str(e))

    return {
        "received": True,
        "event_id": outcome.event_id,
        "duplicate": outcome.duplicate,
        "processed": outcome.processed,
    }

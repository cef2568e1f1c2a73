from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from storescorer.apps.api.deps import get_payment_provider, get_store
from storescorer.apps.api.errors import bad_request
from storescorer.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from storescorer.apps.api.response import SuccessEnvelope, success_response
from storescorer.core.config import get_settings
from storescorer.persistence.store import CODE_NOT_FOUND, EntityStore
from storescorer.providers.payments.base import PaymentProvider
from storescorer.services.reconciliation import handle_webhook_event


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)

SIGNATURE_HEADER = "stripe-signature"


class WebhookAck(BaseModel):
    received: bool


@router.post("/stripe", response_model=SuccessEnvelope[WebhookAck])
async def stripe_webhook(
    request: Request,
    store: EntityStore = Depends(get_store),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> dict:
    # Signature verification needs the exact bytes the provider signed.
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise bad_request("Webhook secret not configured", "WEBHOOK_NOT_CONFIGURED")
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        raise bad_request("Missing signature", "MISSING_SIGNATURE")
    raw_body = await request.body()
    event = provider.verify_webhook_signature(raw_body, signature, settings.stripe_webhook_secret)

    result = await handle_webhook_event(store, event, settings=settings)
    if not result.success:
        if result.code == CODE_NOT_FOUND:
            # Redelivery cannot fix an unknown audit id.
            logger.warning("webhook_audit_not_found event_id=%s error=%s", event.id, result.error)
        elif settings.webhook_ack_on_processing_error:
            logger.error("webhook_processing_failed event_id=%s error=%s", event.id, result.error)
        else:
            # Reconciliation is idempotent, so letting the provider redeliver is safe.
            logger.warning("webhook_processing_retry event_id=%s error=%s", event.id, result.error)
            raise HTTPException(
                status_code=503,
                detail={"code": "WEBHOOK_PROCESSING_FAILED", "message": "Webhook processing failed"},
            )
    return success_response(request=request, data=WebhookAck(received=True))

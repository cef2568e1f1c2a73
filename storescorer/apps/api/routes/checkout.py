from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from storescorer.apps.api.deps import get_payment_provider, get_rate_limiter, get_store
from storescorer.apps.api.openapi import DEFAULT_ERROR_RESPONSES, RATE_LIMIT_RESPONSES
from storescorer.apps.api.response import SuccessEnvelope, success_response
from storescorer.persistence.store import EntityStore
from storescorer.providers.payments.base import PaymentProvider
from storescorer.services.checkout import CheckoutRequest, start_checkout
from storescorer.services.rate_limiter import AuditRateLimiter
from storescorer.services.validation import client_ip


router = APIRouter(tags=["checkout"], responses={**DEFAULT_ERROR_RESPONSES, **RATE_LIMIT_RESPONSES})


class CheckoutBody(BaseModel):
    # Accept snake_case and the storefront form's camelCase keys.
    model_config = ConfigDict(populate_by_name=True)

    domain: str = Field(min_length=1)
    email: str = Field(min_length=3)
    marketing_consent: bool = Field(default=False, alias="marketingConsent")
    utm_source: str | None = Field(default=None, alias="utmSource", max_length=255)
    utm_medium: str | None = Field(default=None, alias="utmMedium", max_length=255)
    utm_campaign: str | None = Field(default=None, alias="utmCampaign", max_length=255)


class CheckoutResponse(BaseModel):
    audit_id: str
    url: str


@router.post("/checkout", response_model=SuccessEnvelope[CheckoutResponse])
async def create_checkout(
    request: Request,
    body: CheckoutBody,
    store: EntityStore = Depends(get_store),
    provider: PaymentProvider = Depends(get_payment_provider),
    limiter: AuditRateLimiter = Depends(get_rate_limiter),
) -> dict:
    # Audit and provider session are created together; the client redirects to the returned URL.
    result = await start_checkout(
        store,
        provider,
        limiter,
        CheckoutRequest(
            domain=body.domain,
            email=body.email,
            marketing_consent=body.marketing_consent,
            utm_source=body.utm_source,
            utm_medium=body.utm_medium,
            utm_campaign=body.utm_campaign,
        ),
        ip=client_ip(request.headers.get("x-forwarded-for"), request.headers.get("x-real-ip")),
        user_agent=request.headers.get("user-agent"),
    )
    payload = CheckoutResponse(audit_id=result.audit_id, url=result.url)
    return success_response(request=request, data=payload)

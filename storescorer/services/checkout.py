from __future__ import annotations

import logging
from dataclasses import dataclass

from storescorer.core.config import Settings, get_settings
from storescorer.core.errors import PaymentConfigError, StoreError
from storescorer.domain.status import AuditStatus, PaymentStatus
from storescorer.persistence.store import EntityStore
from storescorer.providers.payments.base import PaymentProvider
from storescorer.services.rate_limiter import AuditRateLimiter, hash_ip
from storescorer.services.validation import normalize_domain, normalize_email


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutRequest:
    domain: str
    email: str
    marketing_consent: bool = False
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None


@dataclass(frozen=True)
class CheckoutResult:
    audit_id: str
    url: str


async def start_checkout(
    store: EntityStore,
    provider: PaymentProvider,
    limiter: AuditRateLimiter,
    request: CheckoutRequest,
    *,
    ip: str,
    user_agent: str | None = None,
    settings: Settings | None = None,
) -> CheckoutResult:
    """Create a payment_pending audit and a provider checkout session for it.

    Validation and both rate limits run before anything is written. If the
    provider rejects the session the new audit is purged so no unpayable
    audit is left behind.
    """
    settings = settings or get_settings()
    if not settings.stripe_secret_key or not settings.stripe_audit_price_id:
        raise PaymentConfigError("Payment system not configured")

    email = normalize_email(request.email)
    domain = normalize_domain(request.domain)
    await limiter.enforce_checkout(ip, domain)

    created = await store.call(
        "create_audit",
        domain=domain,
        email=email,
        status=AuditStatus.PAYMENT_PENDING,
        marketing_consent=request.marketing_consent,
        created_ip=hash_ip(ip),
        user_agent=user_agent,
        utm_source=request.utm_source,
        utm_medium=request.utm_medium,
        utm_campaign=request.utm_campaign,
    )
    if not created.success:
        raise StoreError(created.error or "Failed to create audit")
    audit = created.data

    try:
        session = await provider.create_checkout_session(
            audit_id=audit.id,
            domain=domain,
            customer_email=email,
            success_url=f"{settings.app_url.rstrip('/')}/audit/{audit.id}",
            cancel_url=f"{settings.app_url.rstrip('/')}?canceled=true",
        )
    except Exception:
        # Any provider failure, expected or not, must not leave an unpayable audit behind.
        purged = await store.call("purge_audit", audit.id)
        if not purged.success:
            logger.error("checkout_rollback_failed audit_id=%s error=%s", audit.id, purged.error)
        logger.warning("checkout_session_failed audit_id=%s domain=%s", audit.id, domain)
        raise

    payment = await store.call(
        "create_payment",
        audit_id=audit.id,
        stripe_session_id=session.id,
        amount=settings.audit_price_cents,
        currency=settings.audit_currency,
        status=PaymentStatus.PENDING,
    )
    if not payment.success:
        # The webhook creates the payment record if this one is missing.
        logger.warning("checkout_payment_record_failed audit_id=%s error=%s", audit.id, payment.error)

    logger.info("checkout_started audit_id=%s domain=%s", audit.id, domain)
    return CheckoutResult(audit_id=audit.id, url=session.url)

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from storescorer.core.config import Settings, get_settings
from storescorer.core.errors import InvalidInputError
from storescorer.domain.records import AuditRecord
from storescorer.domain.status import (
    AWAITING_PAYMENT_STATUSES,
    PAID_IN_PROGRESS_STATUSES,
    AuditStatus,
    PaymentStatus,
)
from storescorer.persistence.store import CODE_CONFLICT, CODE_NOT_FOUND, EntityStore, StoreResult
from storescorer.providers.payments.base import PaymentProvider, ProviderEvent, ProviderSession
from storescorer.services import audit_lifecycle


logger = logging.getLogger(__name__)

SOURCE_WEBHOOK = "webhook"
SOURCE_POLL = "poll"

# Provider payment states that mean the customer has paid.
PAID_PAYMENT_STATUSES = frozenset({"paid", "no_payment_required"})
# Event types that can carry a completed payment.
COMPLETION_EVENT_TYPES = frozenset(
    {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReconciliationResult:
    audit_id: str
    payment_completed_now: bool
    audit_transitioned: bool
    job_created: bool


def is_paid(session: ProviderSession) -> bool:
    return (session.payment_status or "").lower() in PAID_PAYMENT_STATUSES


async def _complete_payment_record(
    store: EntityStore,
    session: ProviderSession,
    *,
    audit_id: str,
    settings: Settings,
    now: datetime,
) -> StoreResult[bool]:
    # Get-or-create the payment keyed by session id, then mark it completed once.
    existing = await store.call("get_payment_by_stripe_session", session.session_id)
    if not existing.success:
        return StoreResult.fail(existing.error or "Payment lookup failed", existing.code)
    if existing.data is None:
        created = await store.call(
            "create_payment",
            audit_id=audit_id,
            stripe_session_id=session.session_id,
            amount=session.amount_total if session.amount_total is not None else settings.audit_price_cents,
            currency=session.currency or settings.audit_currency,
            status=PaymentStatus.COMPLETED,
            stripe_payment_id=session.payment_intent_id,
            paid_at=now,
            now=now,
        )
        if created.success:
            return StoreResult.ok(True)
        if created.code != CODE_CONFLICT:
            return StoreResult.fail(created.error or "Payment create failed", created.code)
        # Another trigger inserted the same session first; converge on mark-completed.
    completed = await store.call(
        "complete_payment",
        session.session_id,
        stripe_payment_id=session.payment_intent_id,
        now=now,
    )
    if not completed.success:
        return StoreResult.fail(completed.error or "Payment completion failed", completed.code)
    _payment, completed_now = completed.data
    return StoreResult.ok(completed_now)


async def reconcile_payment(
    store: EntityStore,
    session: ProviderSession,
    *,
    audit_id: str,
    source: str,
    settings: Settings | None = None,
    time_provider: Callable[[], datetime] | None = None,
) -> StoreResult[ReconciliationResult]:
    """Converge local state with a paid provider session.

    Shared by the webhook and poll paths. Each step is an idempotent store
    primitive (get-or-create payment, mark-completed-once, forward-only audit
    transition, get-or-create job), so repeated or interleaved calls for the
    same session leave one completed payment and one job.
    """
    settings = settings or get_settings()
    now = (time_provider or _utc_now)()

    found = await store.call("get_audit", audit_id)
    if not found.success:
        return StoreResult.fail(found.error or "Audit lookup failed", found.code)
    if found.data is None:
        return StoreResult.fail("Audit not found", CODE_NOT_FOUND)
    audit: AuditRecord = found.data

    payment = await _complete_payment_record(
        store, session, audit_id=audit_id, settings=settings, now=now
    )
    if not payment.success:
        return StoreResult.fail(payment.error or "Payment reconciliation failed", payment.code)

    fields = {}
    if not audit.email and session.customer_email:
        fields["email"] = session.customer_email.strip().lower()
    advanced = await audit_lifecycle.advance(store, audit, AuditStatus.PAYMENT_COMPLETE, **fields)
    if not advanced.success:
        return StoreResult.fail(advanced.error or "Audit transition failed", advanced.code)
    current = advanced.data
    transitioned = audit.status is not current.status

    job_created = False
    if current.status in PAID_IN_PROGRESS_STATUSES:
        job = await store.call("create_audit_job", audit_id, now=now)
        if not job.success:
            return StoreResult.fail(job.error or "Job enqueue failed", job.code)
        _job, job_created = job.data

    logger.info(
        "payment_reconciled audit_id=%s session_id=%s source=%s completed_now=%s job_created=%s",
        audit_id,
        session.session_id,
        source,
        payment.data,
        job_created,
    )
    return StoreResult.ok(
        ReconciliationResult(
            audit_id=audit_id,
            payment_completed_now=bool(payment.data),
            audit_transitioned=transitioned,
            job_created=job_created,
        )
    )


async def handle_webhook_event(
    store: EntityStore,
    event: ProviderEvent,
    *,
    settings: Settings | None = None,
) -> StoreResult[ReconciliationResult | None]:
    # Non-payment events and unpaid sessions are acknowledged without mutation.
    if event.type not in COMPLETION_EVENT_TYPES or event.session is None:
        logger.info("webhook_event_ignored event_type=%s", event.type)
        return StoreResult.ok(None)
    session = event.session
    if not session.audit_id:
        raise InvalidInputError("Missing auditId")
    if not is_paid(session):
        logger.info(
            "webhook_session_unpaid audit_id=%s session_id=%s payment_status=%s",
            session.audit_id,
            session.session_id,
            session.payment_status,
        )
        return StoreResult.ok(None)
    return await reconcile_payment(
        store, session, audit_id=session.audit_id, source=SOURCE_WEBHOOK, settings=settings
    )


async def reconcile_from_provider(
    store: EntityStore,
    provider: PaymentProvider,
    audit: AuditRecord,
    *,
    settings: Settings | None = None,
) -> ReconciliationResult | None:
    """Poll-time fallback for missed webhooks.

    Only audits still awaiting payment with a known checkout session are
    looked up. Provider or store failures are logged and leave the audit as
    it was for a later attempt.
    """
    if audit.status not in AWAITING_PAYMENT_STATUSES:
        return None
    payment = await store.call("get_payment_for_audit", audit.id)
    if not payment.success or payment.data is None:
        return None
    session_id = payment.data.stripe_session_id
    try:
        session = await provider.retrieve_session(session_id)
    except Exception as exc:  # noqa: BLE001 - poll reconciliation is best effort
        logger.warning(
            "poll_reconcile_lookup_failed audit_id=%s session_id=%s", audit.id, session_id, exc_info=exc
        )
        return None
    if not is_paid(session):
        return None
    result = await reconcile_payment(
        store, session, audit_id=audit.id, source=SOURCE_POLL, settings=settings
    )
    if not result.success:
        logger.warning(
            "poll_reconcile_failed audit_id=%s session_id=%s error=%s", audit.id, session_id, result.error
        )
        return None
    return result.data

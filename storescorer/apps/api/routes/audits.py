from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel

from storescorer.apps.api.deps import get_job_queue, get_payment_provider, get_store
from storescorer.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from storescorer.apps.api.response import SuccessEnvelope, success_response
from storescorer.core.errors import StoreError
from storescorer.domain.records import AuditJobRecord, AuditRecord, PaymentRecord
from storescorer.persistence.store import EntityStore
from storescorer.providers.payments.base import PaymentProvider
from storescorer.services import audit_lifecycle
from storescorer.services.jobs import JobQueue
from storescorer.services.reconciliation import reconcile_from_provider


router = APIRouter(tags=["audits"], responses=DEFAULT_ERROR_RESPONSES)


class PaymentSummary(BaseModel):
    status: str
    amount: int
    currency: str
    paid_at: datetime | None = None


class JobSummary(BaseModel):
    id: str
    status: str
    attempts: int
    last_error: str | None = None


class AuditResponse(BaseModel):
    id: str
    domain: str
    status: str
    email: str | None = None
    share_token: str
    share_active: bool
    overall_score: float | None = None
    synthesis: dict[str, Any] | None = None
    error_message: str | None = None
    warning_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
    payment: PaymentSummary | None = None
    job: JobSummary | None = None


class SharedReportResponse(BaseModel):
    domain: str
    overall_score: float | None = None
    synthesis: dict[str, Any] | None = None
    created_at: datetime
    completed_at: datetime | None = None


def audit_payload(
    audit: AuditRecord, payment: PaymentRecord | None = None, job: AuditJobRecord | None = None
) -> AuditResponse:
    return AuditResponse(
        id=audit.id,
        domain=audit.domain,
        status=audit.status.value,
        email=audit.email,
        share_token=audit.share_token,
        share_active=audit.share_active,
        overall_score=audit.overall_score,
        synthesis=audit.synthesis,
        error_message=audit.error_message,
        warning_message=audit.warning_message,
        created_at=audit.created_at,
        completed_at=audit.completed_at,
        payment=(
            PaymentSummary(
                status=payment.status.value,
                amount=payment.amount,
                currency=payment.currency,
                paid_at=payment.paid_at,
            )
            if payment
            else None
        ),
        job=(
            JobSummary(id=job.id, status=job.status.value, attempts=job.attempts, last_error=job.last_error)
            if job
            else None
        ),
    )


async def _related(store: EntityStore, audit_id: str) -> tuple[PaymentRecord | None, AuditJobRecord | None]:
    payment = await store.call("get_payment_for_audit", audit_id)
    job = await store.call("get_job_by_audit_id", audit_id)
    if not payment.success or not job.success:
        raise StoreError(payment.error or job.error or "Audit lookup failed")
    return payment.data, job.data


@router.get("/audits/{audit_id}", response_model=SuccessEnvelope[AuditResponse])
async def get_audit(
    audit_id: str,
    request: Request,
    response: Response,
    reconcile: bool = Query(default=False),
    kick: bool = Query(default=False),
    store: EntityStore = Depends(get_store),
    provider: PaymentProvider = Depends(get_payment_provider),
    queue: JobQueue = Depends(get_job_queue),
) -> dict:
    # Status pages poll this; the response must never be cached.
    response.headers["Cache-Control"] = "no-store"
    audit = await audit_lifecycle.get_audit(store, audit_id)
    if reconcile and await reconcile_from_provider(store, provider, audit) is not None:
        audit = await audit_lifecycle.get_audit(store, audit_id)
    if kick:
        # Only ensures a job exists; the sweep remains the sole executor.
        await queue.kick(audit)
    payment, job = await _related(store, audit_id)
    return success_response(request=request, data=audit_payload(audit, payment, job))


@router.get("/share/{share_token}", response_model=SuccessEnvelope[SharedReportResponse])
async def get_shared_report(
    share_token: str,
    request: Request,
    store: EntityStore = Depends(get_store),
) -> dict:
    report = await audit_lifecycle.get_shared_report(store, share_token)
    payload = SharedReportResponse(
        domain=report.domain,
        overall_score=report.overall_score,
        synthesis=report.synthesis,
        created_at=report.created_at,
        completed_at=report.completed_at,
    )
    return success_response(request=request, data=payload)

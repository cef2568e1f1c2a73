from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from storescorer.apps.api.deps import get_job_queue, get_store, require_admin
from storescorer.apps.api.openapi import AUTH_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES
from storescorer.apps.api.response import SuccessEnvelope, success_response
from storescorer.apps.api.routes.audits import AuditResponse, JobSummary, audit_payload
from storescorer.core.errors import AuditNotFoundError, InvalidInputError, RecordNotFoundError, StoreError
from storescorer.domain.status import AuditStatus
from storescorer.persistence.store import CODE_INVALID, CODE_NOT_FOUND, EntityStore
from storescorer.services import audit_lifecycle
from storescorer.services.jobs import JobQueue
from storescorer.services.validation import normalize_email


router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    responses={**DEFAULT_ERROR_RESPONSES, **AUTH_ERROR_RESPONSES},
    dependencies=[Depends(require_admin)],
)


class RevokeRequest(BaseModel):
    share_token: str = Field(min_length=1)


class ClaimRequest(BaseModel):
    user_id: str = Field(min_length=1)
    email: str = Field(min_length=3)


class ClaimResponse(BaseModel):
    claimed_count: int


class DeleteResponse(BaseModel):
    deleted: bool


@router.get("/audits", response_model=SuccessEnvelope[list[AuditResponse]])
async def list_audits(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    status: str | None = Query(default=None),
    store: EntityStore = Depends(get_store),
) -> dict:
    # Accept any casing for the status filter.
    status_filter = None
    if status:
        try:
            status_filter = AuditStatus(status)
        except ValueError as exc:
            raise InvalidInputError(f"Unknown audit status: {status}") from exc
    result = await store.call("list_audits", limit=limit, status=status_filter)
    if not result.success:
        raise StoreError(result.error or "Audit listing failed")
    payload = [audit_payload(audit).model_dump(mode="json") for audit in result.data]
    return success_response(request=request, data=payload)


@router.post("/revoke", response_model=SuccessEnvelope[AuditResponse])
async def revoke_share(
    request: Request,
    body: RevokeRequest,
    store: EntityStore = Depends(get_store),
) -> dict:
    audit = await audit_lifecycle.revoke_share(store, body.share_token)
    return success_response(request=request, data=audit_payload(audit))


@router.post("/audits/claim", response_model=SuccessEnvelope[ClaimResponse])
async def claim_audits(
    request: Request,
    body: ClaimRequest,
    store: EntityStore = Depends(get_store),
) -> dict:
    # Identity is resolved upstream; this links purchases made before sign-in.
    claimed = await audit_lifecycle.claim_audits_by_email(store, body.user_id, normalize_email(body.email))
    return success_response(request=request, data=ClaimResponse(claimed_count=claimed))


@router.delete("/audits/{audit_id}", response_model=SuccessEnvelope[DeleteResponse])
async def delete_audit(
    audit_id: str,
    request: Request,
    store: EntityStore = Depends(get_store),
) -> dict:
    result = await store.call("delete_audit", audit_id)
    if not result.success:
        raise StoreError(result.error or "Audit delete failed")
    if not result.data:
        raise AuditNotFoundError("Audit not found")
    return success_response(request=request, data=DeleteResponse(deleted=True))


@router.post("/jobs/{job_id}/retry", response_model=SuccessEnvelope[JobSummary])
async def retry_job(
    job_id: str,
    request: Request,
    queue: JobQueue = Depends(get_job_queue),
) -> dict:
    result = await queue.retry(job_id)
    if not result.success:
        if result.code == CODE_NOT_FOUND:
            raise RecordNotFoundError(result.error or "Job not found")
        if result.code == CODE_INVALID:
            raise InvalidInputError(result.error or "Job cannot be retried")
        raise StoreError(result.error or "Job retry failed")
    job = result.data
    payload = JobSummary(id=job.id, status=job.status.value, attempts=job.attempts, last_error=job.last_error)
    return success_response(request=request, data=payload)

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from storescorer.apps.api.deps import (
    get_audit_pipeline,
    get_job_queue,
    get_rate_limiter,
    require_cron_secret,
)
from storescorer.apps.api.openapi import AUTH_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES
from storescorer.apps.api.response import SuccessEnvelope, success_response
from storescorer.core.errors import StoreError
from storescorer.providers.pipeline.base import AuditPipeline
from storescorer.services.jobs import JobQueue
from storescorer.services.rate_limiter import AuditRateLimiter


router = APIRouter(
    prefix="/cron",
    tags=["cron"],
    responses={**DEFAULT_ERROR_RESPONSES, **AUTH_ERROR_RESPONSES},
    dependencies=[Depends(require_cron_secret)],
)


class SweepResponse(BaseModel):
    processed: int
    failed: int
    skipped: int
    retried: int
    exhausted: int
    processed_audits: list[str]
    failed_audits: list[str]


class CleanupResponse(BaseModel):
    deleted_count: int


@router.api_route("/process-jobs", methods=["GET", "POST"], response_model=SuccessEnvelope[SweepResponse])
async def process_jobs(
    request: Request,
    max_jobs: int | None = Query(default=None, ge=1, le=100),
    lock_timeout_minutes: int | None = Query(default=None, ge=1, le=1440),
    queue: JobQueue = Depends(get_job_queue),
    pipeline: AuditPipeline = Depends(get_audit_pipeline),
) -> dict:
    # Runs one sweep inline; overlapping triggers are safe because claims are exclusive.
    result = await queue.run_sweep(
        pipeline, max_jobs=max_jobs, lock_timeout_minutes=lock_timeout_minutes
    )
    if not result.success:
        raise StoreError(result.error or "Sweep failed")
    sweep = result.data
    payload = SweepResponse(
        processed=sweep.processed,
        failed=sweep.failed,
        skipped=sweep.skipped,
        retried=sweep.retried,
        exhausted=sweep.exhausted,
        processed_audits=sweep.processed_audits,
        failed_audits=sweep.failed_audits,
    )
    return success_response(request=request, data=payload)


@router.api_route(
    "/cleanup-rate-limits", methods=["GET", "POST"], response_model=SuccessEnvelope[CleanupResponse]
)
async def cleanup_rate_limits(
    request: Request,
    older_than_hours: int | None = Query(default=None, ge=1, le=24 * 365),
    limiter: AuditRateLimiter = Depends(get_rate_limiter),
) -> dict:
    deleted = await limiter.cleanup(older_than_hours)
    return success_response(request=request, data=CleanupResponse(deleted_count=deleted))

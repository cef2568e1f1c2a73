from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storescorer.core.errors import RecordNotFoundError, StoreError
from storescorer.domain.models import Audit, AuditJob, status_in, status_not_in
from storescorer.domain.status import TERMINAL_AUDIT_STATUSES, JobStatus


# Keep stored error text bounded; full traces belong in logs.
_MAX_ERROR_LENGTH = 2000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _claimable(cutoff: datetime):
    # Pending jobs that are unlocked or stale, plus processing jobs abandoned by a crashed worker.
    return or_(
        and_(
            status_in(AuditJob.status, [JobStatus.PENDING]),
            or_(AuditJob.locked_at.is_(None), AuditJob.locked_at < cutoff),
        ),
        and_(status_in(AuditJob.status, [JobStatus.PROCESSING]), AuditJob.locked_at < cutoff),
    )


async def get_job(session: AsyncSession, job_id: str) -> AuditJob | None:
    return await session.get(AuditJob, job_id, populate_existing=True)


async def get_job_by_audit_id(session: AsyncSession, audit_id: str) -> AuditJob | None:
    # Latest job for the audit in any status.
    result = await session.execute(
        select(AuditJob)
        .where(AuditJob.audit_id == audit_id)
        .order_by(AuditJob.created_at.desc(), AuditJob.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_audit_job(
    session: AsyncSession, audit_id: str, *, now: datetime | None = None
) -> tuple[AuditJob, bool]:
    """Get-or-create the job for an audit.

    Returns the job and whether it was created by this call. The partial unique
    index on active jobs resolves concurrent inserts: the loser rolls back and
    returns the winner's row.
    """
    existing = await get_job_by_audit_id(session, audit_id)
    if existing is not None:
        return existing, False
    now = now or _utc_now()
    job = AuditJob(
        audit_id=audit_id,
        status=JobStatus.PENDING,
        attempts=0,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        existing = await get_job_by_audit_id(session, audit_id)
        if existing is None:
            raise
        return existing, False
    return job, True


async def get_pending_jobs(
    session: AsyncSession,
    *,
    limit: int,
    lock_timeout_minutes: int,
    now: datetime | None = None,
) -> list[AuditJob]:
    # Oldest eligible job first so a backlog drains in arrival order.
    cutoff = (now or _utc_now()) - timedelta(minutes=lock_timeout_minutes)
    result = await session.execute(
        select(AuditJob)
        .where(_claimable(cutoff))
        .order_by(AuditJob.created_at, AuditJob.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def lock_job(
    session: AsyncSession,
    job_id: str,
    *,
    lock_timeout_minutes: int,
    now: datetime | None = None,
) -> AuditJob | None:
    """Claim a job with one conditional update.

    Only one concurrent caller can match the row. The winner gets the locked
    job back; its ``locked_at`` is the ownership token later passed to
    ``complete_job`` and ``fail_job``. Losers get None.
    """
    now = now or _utc_now()
    cutoff = now - timedelta(minutes=lock_timeout_minutes)
    result = await session.execute(
        update(AuditJob)
        .where(AuditJob.id == job_id, _claimable(cutoff))
        .values(
            status=JobStatus.PROCESSING,
            locked_at=now,
            attempts=AuditJob.attempts + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return await get_job(session, job_id)


async def _release(
    session: AsyncSession,
    job_id: str,
    locked_at: datetime | None,
    **values: object,
) -> tuple[AuditJob, bool]:
    # Only the current lock holder may end a processing job; a reclaimed job keeps its new owner.
    conditions = [AuditJob.id == job_id, status_in(AuditJob.status, [JobStatus.PROCESSING])]
    if locked_at is not None:
        conditions.append(AuditJob.locked_at == locked_at)
    result = await session.execute(
        update(AuditJob)
        .where(*conditions)
        .values(locked_at=None, **values)
        .execution_options(synchronize_session=False)
    )
    job = await get_job(session, job_id)
    if job is None:
        raise RecordNotFoundError("Job not found")
    return job, bool(result.rowcount)


async def complete_job(
    session: AsyncSession,
    job_id: str,
    *,
    locked_at: datetime | None = None,
    now: datetime | None = None,
) -> tuple[AuditJob, bool]:
    return await _release(
        session,
        job_id,
        locked_at,
        status=JobStatus.COMPLETED,
        last_error=None,
        updated_at=now or _utc_now(),
    )


async def fail_job(
    session: AsyncSession,
    job_id: str,
    error: str,
    *,
    locked_at: datetime | None = None,
    now: datetime | None = None,
) -> tuple[AuditJob, bool]:
    # The lock is released with the failure so the job is never left processing.
    return await _release(
        session,
        job_id,
        locked_at,
        status=JobStatus.FAILED,
        last_error=(error or "Unknown error")[:_MAX_ERROR_LENGTH],
        updated_at=now or _utc_now(),
    )


async def retry_job(
    session: AsyncSession, job_id: str, *, now: datetime | None = None
) -> AuditJob:
    # Attempts are preserved so callers can base backoff on them.
    result = await session.execute(
        update(AuditJob)
        .where(AuditJob.id == job_id, status_in(AuditJob.status, [JobStatus.FAILED]))
        .values(
            status=JobStatus.PENDING,
            locked_at=None,
            last_error=None,
            updated_at=now or _utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    job = await get_job(session, job_id)
    if job is None:
        raise RecordNotFoundError("Job not found")
    if not result.rowcount:
        raise StoreError(f"Job is {job.status.value}, only failed jobs can be retried")
    return job


async def list_failed_jobs(session: AsyncSession, *, limit: int = 100) -> list[AuditJob]:
    # Failed jobs whose audit is still open and awaiting a retry-or-fail decision.
    result = await session.execute(
        select(AuditJob)
        .join(Audit, Audit.id == AuditJob.audit_id)
        .where(
            status_in(AuditJob.status, [JobStatus.FAILED]),
            Audit.deleted_at.is_(None),
            status_not_in(Audit.status, TERMINAL_AUDIT_STATUSES),
        )
        .order_by(AuditJob.updated_at, AuditJob.id)
        .limit(limit)
    )
    return list(result.scalars().all())

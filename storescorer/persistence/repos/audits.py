from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storescorer.core.errors import AuditNotFoundError, StoreError
from storescorer.domain.models import Audit, AuditJob, Payment, status_in, status_not_in
from storescorer.domain.status import TERMINAL_AUDIT_STATUSES, AuditStatus


# Fields a status transition may patch alongside the status itself.
TRANSITION_FIELDS = frozenset(
    {
        "email",
        "overall_score",
        "synthesis",
        "token_usage",
        "error_message",
        "warning_message",
        "completed_at",
    }
)
# Non-status fields that plain updates may touch.
UPDATABLE_FIELDS = frozenset(
    {
        "email",
        "user_id",
        "share_active",
        "marketing_consent",
        "warning_message",
    }
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_audit(
    session: AsyncSession,
    *,
    domain: str,
    email: str | None,
    status: AuditStatus | str = AuditStatus.PAYMENT_PENDING,
    marketing_consent: bool = False,
    created_ip: str | None = None,
    user_agent: str | None = None,
    utm_source: str | None = None,
    utm_medium: str | None = None,
    utm_campaign: str | None = None,
    audit_id: str | None = None,
    now: datetime | None = None,
) -> Audit:
    now = now or _utc_now()
    audit = Audit(
        domain=domain,
        email=email,
        status=AuditStatus(status),
        marketing_consent=marketing_consent,
        created_ip=created_ip,
        user_agent=user_agent,
        utm_source=utm_source,
        utm_medium=utm_medium,
        utm_campaign=utm_campaign,
        created_at=now,
        updated_at=now,
    )
    if audit_id:
        audit.id = audit_id
    session.add(audit)
    await session.flush()
    return audit


async def get_audit(
    session: AsyncSession, audit_id: str, *, include_deleted: bool = False
) -> Audit | None:
    # Soft-deleted audits behave as missing unless explicitly requested.
    audit = await session.get(Audit, audit_id, populate_existing=True)
    if audit is None or (audit.deleted_at is not None and not include_deleted):
        return None
    return audit


async def get_audit_by_share_token(
    session: AsyncSession, share_token: str, *, record_view: bool = False
) -> Audit | None:
    result = await session.execute(
        select(Audit).where(Audit.share_token == share_token, Audit.deleted_at.is_(None))
    )
    audit = result.scalar_one_or_none()
    if audit is None or not record_view:
        return audit
    await session.execute(
        update(Audit)
        .where(Audit.id == audit.id)
        .values(share_view_count=Audit.share_view_count + 1)
        .execution_options(synchronize_session=False)
    )
    return await session.get(Audit, audit.id, populate_existing=True)


async def transition_audit(
    session: AsyncSession,
    audit_id: str,
    status: AuditStatus | str,
    *,
    now: datetime | None = None,
    **fields: Any,
) -> Audit:
    """Apply a status change plus optional report fields in one conditional update.

    The graph is not validated here. Completed and failed audits are frozen:
    the update matches no row and the unchanged audit is returned.
    """
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise StoreError(f"Unsupported audit fields: {', '.join(sorted(unknown))}")
    values = {"status": AuditStatus(status), "updated_at": now or _utc_now(), **fields}
    await session.execute(
        update(Audit)
        .where(
            Audit.id == audit_id,
            Audit.deleted_at.is_(None),
            status_not_in(Audit.status, TERMINAL_AUDIT_STATUSES),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    audit = await get_audit(session, audit_id)
    if audit is None:
        raise AuditNotFoundError("Audit not found")
    return audit


async def update_audit(session: AsyncSession, audit_id: str, **fields: Any) -> Audit:
    # Status changes must go through transition_audit.
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise StoreError(f"Unsupported audit fields: {', '.join(sorted(unknown))}")
    audit = await get_audit(session, audit_id)
    if audit is None:
        raise AuditNotFoundError("Audit not found")
    for name, value in fields.items():
        setattr(audit, name, value)
    audit.updated_at = _utc_now()
    await session.flush()
    return audit


async def delete_audit(session: AsyncSession, audit_id: str, *, now: datetime | None = None) -> bool:
    result = await session.execute(
        update(Audit)
        .where(Audit.id == audit_id, Audit.deleted_at.is_(None))
        .values(deleted_at=now or _utc_now(), share_active=False)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def purge_audit(session: AsyncSession, audit_id: str) -> bool:
    # Hard delete reserved for rolling back a checkout whose provider session failed.
    await session.execute(delete(AuditJob).where(AuditJob.audit_id == audit_id))
    await session.execute(delete(Payment).where(Payment.audit_id == audit_id))
    result = await session.execute(delete(Audit).where(Audit.id == audit_id))
    return bool(result.rowcount)


async def list_audits(
    session: AsyncSession,
    *,
    limit: int = 50,
    status: AuditStatus | str | None = None,
) -> list[Audit]:
    stmt = select(Audit).where(Audit.deleted_at.is_(None))
    if status is not None:
        stmt = stmt.where(status_in(Audit.status, [AuditStatus(status)]))
    result = await session.execute(stmt.order_by(Audit.created_at.desc(), Audit.id).limit(limit))
    return list(result.scalars().all())


async def claim_audits_by_email(session: AsyncSession, user_id: str, email: str) -> int:
    # Attach unowned audits bought with this email to the signed-in user.
    result = await session.execute(
        update(Audit)
        .where(
            Audit.user_id.is_(None),
            Audit.deleted_at.is_(None),
            func.lower(Audit.email) == email.strip().lower(),
        )
        .values(user_id=user_id, updated_at=_utc_now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0

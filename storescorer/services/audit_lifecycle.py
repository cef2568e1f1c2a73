from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from storescorer.core.errors import AuditNotFoundError, ReportNotReadyError, ShareRevokedError, StoreError
from storescorer.domain.records import AuditRecord
from storescorer.domain.status import AuditStatus, is_forward_transition
from storescorer.persistence.store import CODE_NOT_FOUND, EntityStore, StoreResult


logger = logging.getLogger(__name__)


async def transition(
    store: EntityStore,
    audit_id: str,
    new_status: AuditStatus | str,
    **fields: Any,
) -> StoreResult[AuditRecord]:
    # Unvalidated transition; terminal audits come back unchanged.
    return await store.call("transition_audit", audit_id, AuditStatus(new_status), **fields)


async def advance(
    store: EntityStore,
    audit: AuditRecord,
    new_status: AuditStatus | str,
    **fields: Any,
) -> StoreResult[AuditRecord]:
    """Transition only when it moves the audit forward along the lifecycle.

    Backward or repeated moves, and any move out of a terminal state, are
    no-ops that return the audit as given.
    """
    status = AuditStatus(new_status)
    if not is_forward_transition(audit.status, status):
        return StoreResult.ok(audit)
    result = await transition(store, audit.id, status, **fields)
    if result.success and result.data is not None and result.data.status is status:
        logger.info(
            "audit_transitioned audit_id=%s from=%s to=%s", audit.id, audit.status.value, status.value
        )
    return result


async def fail_audit(store: EntityStore, audit_id: str, error_message: str) -> StoreResult[AuditRecord]:
    return await transition(store, audit_id, AuditStatus.FAILED, error_message=error_message)


async def get_audit(store: EntityStore, audit_id: str) -> AuditRecord:
    result = await store.call("get_audit", audit_id)
    if not result.success:
        raise StoreError(result.error or "Audit lookup failed")
    if result.data is None:
        raise AuditNotFoundError("Audit not found")
    return result.data


async def claim_audits_by_email(store: EntityStore, user_id: str, email: str) -> int:
    result = await store.call("claim_audits_by_email", user_id, email)
    if not result.success:
        raise StoreError(result.error or "Claim failed")
    claimed = int(result.data or 0)
    if claimed:
        logger.info("audits_claimed user_id=%s count=%s", user_id, claimed)
    return claimed


async def revoke_share(store: EntityStore, share_token: str) -> AuditRecord:
    found = await store.call("get_audit_by_share_token", share_token)
    if not found.success:
        raise StoreError(found.error or "Audit lookup failed")
    if found.data is None:
        raise AuditNotFoundError("Audit not found")
    updated = await store.call("update_audit", found.data.id, share_active=False)
    if not updated.success:
        if updated.code == CODE_NOT_FOUND:
            raise AuditNotFoundError("Audit not found")
        raise StoreError(updated.error or "Revoke failed")
    logger.info("audit_share_revoked audit_id=%s", found.data.id)
    return updated.data


@dataclass(frozen=True)
class SharedReport:
    domain: str
    overall_score: float | None
    synthesis: dict[str, Any] | None
    created_at: datetime
    completed_at: datetime | None


async def get_shared_report(store: EntityStore, share_token: str) -> SharedReport:
    # Public read path: revoked links are distinguishable from unknown ones.
    found = await store.call("get_audit_by_share_token", share_token, record_view=True)
    if not found.success:
        raise StoreError(found.error or "Audit lookup failed")
    audit = found.data
    if audit is None:
        raise AuditNotFoundError("Report not found")
    if not audit.share_active:
        raise ShareRevokedError("This report has been revoked")
    if audit.status is not AuditStatus.COMPLETED or not audit.synthesis:
        raise ReportNotReadyError("Report not ready")
    return SharedReport(
        domain=audit.domain,
        overall_score=audit.overall_score,
        synthesis=audit.synthesis,
        created_at=audit.created_at,
        completed_at=audit.completed_at,
    )

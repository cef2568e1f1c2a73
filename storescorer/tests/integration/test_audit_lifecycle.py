from __future__ import annotations

import pytest

from storescorer.core.errors import AuditNotFoundError, ReportNotReadyError, ShareRevokedError
from storescorer.domain.status import AuditStatus
from storescorer.persistence.store import CODE_INVALID, CODE_NOT_FOUND, EntityStore
from storescorer.services import audit_lifecycle
from storescorer.tests.utils.db import read_raw_status, write_raw_status


async def _create_audit(store: EntityStore, **overrides):
    values = {"domain": "shop.example.com", "email": "buyer@example.com", "status": AuditStatus.PAYMENT_PENDING}
    values.update(overrides)
    result = await store.call("create_audit", **values)
    assert result.success, result.error
    return result.data


async def test_create_audit_defaults(store: EntityStore) -> None:
    audit = await _create_audit(store)

    assert audit.status is AuditStatus.PAYMENT_PENDING
    assert audit.share_active is True
    assert len(audit.share_token) >= 24
    assert audit.overall_score is None
    assert audit.created_at.tzinfo is not None


async def test_transition_patches_report_fields(store: EntityStore) -> None:
    audit = await _create_audit(store, status=AuditStatus.ANALYZING)

    result = await audit_lifecycle.transition(
        store, audit.id, AuditStatus.COMPLETED, overall_score=81.5, synthesis={"summary": "ok"}
    )

    assert result.success
    assert result.data.status is AuditStatus.COMPLETED
    assert result.data.overall_score == 81.5
    assert result.data.synthesis == {"summary": "ok"}


async def test_terminal_audits_are_frozen(store: EntityStore) -> None:
    audit = await _create_audit(store, status=AuditStatus.ANALYZING)
    await audit_lifecycle.transition(store, audit.id, AuditStatus.COMPLETED, overall_score=90.0)

    # Even an unvalidated transition cannot move a completed audit.
    result = await audit_lifecycle.transition(
        store, audit.id, AuditStatus.FAILED, error_message="late failure"
    )

    assert result.success
    assert result.data.status is AuditStatus.COMPLETED
    assert result.data.error_message is None
    assert result.data.overall_score == 90.0

    reapplied = await audit_lifecycle.transition(store, audit.id, AuditStatus.COMPLETED, overall_score=10.0)
    assert reapplied.success
    assert reapplied.data.overall_score == 90.0


async def test_advance_ignores_backward_moves(store: EntityStore) -> None:
    audit = await _create_audit(store, status=AuditStatus.CRAWLING)

    result = await audit_lifecycle.advance(store, audit, AuditStatus.PAYMENT_COMPLETE)

    assert result.success
    assert result.data.status is AuditStatus.CRAWLING
    stored = await audit_lifecycle.get_audit(store, audit.id)
    assert stored.status is AuditStatus.CRAWLING


async def test_fail_audit_records_error(store: EntityStore) -> None:
    audit = await _create_audit(store, status=AuditStatus.CRAWLING)

    result = await audit_lifecycle.fail_audit(store, audit.id, "crawler blocked")

    assert result.data.status is AuditStatus.FAILED
    assert result.data.error_message == "crawler blocked"


async def test_transition_unknown_audit_is_not_found(store: EntityStore) -> None:
    result = await audit_lifecycle.transition(store, "missing", AuditStatus.CRAWLING)

    assert not result.success
    assert result.code == CODE_NOT_FOUND


async def test_store_rejects_unknown_fields_and_operations(store: EntityStore) -> None:
    audit = await _create_audit(store)

    bad_field = await store.call("update_audit", audit.id, status="completed")
    bad_operation = await store.call("drop_everything")

    assert not bad_field.success and bad_field.code == CODE_INVALID
    assert not bad_operation.success and bad_operation.code == CODE_INVALID


async def test_soft_deleted_audit_is_hidden(store: EntityStore) -> None:
    audit = await _create_audit(store)

    deleted = await store.call("delete_audit", audit.id)

    assert deleted.data is True
    with pytest.raises(AuditNotFoundError):
        await audit_lifecycle.get_audit(store, audit.id)
    assert (await store.call("delete_audit", audit.id)).data is False


async def test_shared_report_states(store: EntityStore) -> None:
    audit = await _create_audit(store, status=AuditStatus.ANALYZING)

    with pytest.raises(ReportNotReadyError):
        await audit_lifecycle.get_shared_report(store, audit.share_token)

    await audit_lifecycle.transition(
        store, audit.id, AuditStatus.COMPLETED, overall_score=70.0, synthesis={"summary": "done"}
    )
    report = await audit_lifecycle.get_shared_report(store, audit.share_token)
    assert report.domain == "shop.example.com"
    assert report.synthesis == {"summary": "done"}
    stored = await audit_lifecycle.get_audit(store, audit.id)
    assert stored.share_view_count == 2

    revoked = await audit_lifecycle.revoke_share(store, audit.share_token)
    assert revoked.share_active is False
    with pytest.raises(ShareRevokedError):
        await audit_lifecycle.get_shared_report(store, audit.share_token)
    with pytest.raises(AuditNotFoundError):
        await audit_lifecycle.get_shared_report(store, "unknown-token")


async def test_claim_audits_by_email_only_claims_unowned(store: EntityStore) -> None:
    first = await _create_audit(store, email="owner@example.com")
    await _create_audit(store, email="OWNER@example.com")
    await _create_audit(store, email="someone@example.com")

    claimed = await audit_lifecycle.claim_audits_by_email(store, "user-1", "owner@example.com")
    again = await audit_lifecycle.claim_audits_by_email(store, "user-2", "owner@example.com")

    assert claimed == 2
    assert again == 0
    assert (await audit_lifecycle.get_audit(store, first.id)).user_id == "user-1"


async def test_upper_case_terminal_status_is_still_frozen(store: EntityStore) -> None:
    audit = await _create_audit(store, status=AuditStatus.ANALYZING)
    await audit_lifecycle.transition(store, audit.id, AuditStatus.COMPLETED, overall_score=90.0)
    await write_raw_status("audits", audit.id, "COMPLETED")

    result = await audit_lifecycle.transition(store, audit.id, AuditStatus.FAILED, error_message="late")

    assert result.data.status is AuditStatus.COMPLETED
    assert result.data.error_message is None
    assert result.data.overall_score == 90.0
    assert await read_raw_status("audits", audit.id) == "COMPLETED"


async def test_list_audits_matches_any_stored_casing(store: EntityStore) -> None:
    audit = await _create_audit(store)
    await write_raw_status("audits", audit.id, "PAYMENT_PENDING")

    listed = await store.call("list_audits", status=AuditStatus.PAYMENT_PENDING)

    assert [item.id for item in listed.data] == [audit.id]

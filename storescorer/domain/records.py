from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from storescorer.domain.models import Audit, AuditJob, Payment
from storescorer.domain.status import AuditStatus, JobStatus, PaymentStatus


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on read; all stored timestamps are UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class AuditRecord:
    id: str
    domain: str
    email: str | None
    status: AuditStatus
    user_id: str | None
    share_token: str
    share_active: bool
    share_view_count: int
    overall_score: float | None
    synthesis: dict[str, Any] | None
    token_usage: int | None
    error_message: str | None
    warning_message: str | None
    marketing_consent: bool
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    deleted_at: datetime | None

    @classmethod
    def from_model(cls, audit: Audit) -> AuditRecord:
        return cls(
            id=audit.id,
            domain=audit.domain,
            email=audit.email,
            status=AuditStatus(audit.status),
            user_id=audit.user_id,
            share_token=audit.share_token,
            share_active=bool(audit.share_active),
            share_view_count=int(audit.share_view_count or 0),
            overall_score=audit.overall_score,
            synthesis=audit.synthesis,
            token_usage=audit.token_usage,
            error_message=audit.error_message,
            warning_message=audit.warning_message,
            marketing_consent=bool(audit.marketing_consent),
            created_at=as_utc(audit.created_at),
            updated_at=as_utc(audit.updated_at),
            completed_at=as_utc(audit.completed_at),
            deleted_at=as_utc(audit.deleted_at),
        )


@dataclass(frozen=True)
class PaymentRecord:
    id: str
    audit_id: str
    stripe_session_id: str
    stripe_payment_id: str | None
    amount: int
    currency: str
    status: PaymentStatus
    created_at: datetime
    paid_at: datetime | None

    @classmethod
    def from_model(cls, payment: Payment) -> PaymentRecord:
        return cls(
            id=payment.id,
            audit_id=payment.audit_id,
            stripe_session_id=payment.stripe_session_id,
            stripe_payment_id=payment.stripe_payment_id,
            amount=payment.amount,
            currency=payment.currency,
            status=PaymentStatus(payment.status),
            created_at=as_utc(payment.created_at),
            paid_at=as_utc(payment.paid_at),
        )


@dataclass(frozen=True)
class AuditJobRecord:
    id: str
    audit_id: str
    status: JobStatus
    attempts: int
    last_error: str | None
    locked_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, job: AuditJob) -> AuditJobRecord:
        return cls(
            id=job.id,
            audit_id=job.audit_id,
            status=JobStatus(job.status),
            attempts=int(job.attempts or 0),
            last_error=job.last_error,
            locked_at=as_utc(job.locked_at),
            created_at=as_utc(job.created_at),
            updated_at=as_utc(job.updated_at),
        )


@dataclass(frozen=True)
class RateLimitCheck:
    key: str
    type: str
    count: int
    limit: int
    remaining: int
    is_limited: bool
    window_minutes: int

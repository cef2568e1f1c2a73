from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from storescorer.domain.status import AuditStatus, JobStatus, PaymentStatus


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


def _new_share_token() -> str:
    return secrets.token_urlsafe(24)


class StatusType(TypeDecorator):
    """String column that round-trips through a status enum.

    Values are normalized to the enum's lower-case form on write, and rows
    written with any other casing come back as the same enum member.
    """

    impl = String
    cache_ok = True

    def __init__(self, enum_cls: type, length: int = 32) -> None:
        super().__init__(length=length)
        self.enum_cls = enum_cls

    def process_bind_param(self, value: Any, dialect: Any) -> str | None:
        if value is None:
            return None
        return self.enum_cls(value).value

    def process_result_value(self, value: Any, dialect: Any):
        if value is None:
            return None
        return self.enum_cls(value)


# Statuses written before casing was normalised may still be upper case in the
# database, so SQL-side status predicates compare the lower-cased column.
ACTIVE_JOB_PREDICATE = "lower(status) IN ('pending', 'processing')"


def status_in(column: Any, statuses: Iterable[Any]):
    return func.lower(column).in_(sorted(str(status).lower() for status in statuses))


def status_not_in(column: Any, statuses: Iterable[Any]):
    return func.lower(column).not_in(sorted(str(status).lower() for status in statuses))


# Portable JSON column that uses JSONB on Postgres.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Audit(Base):
    __tablename__ = "audits"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    domain: Mapped[str] = mapped_column(String(255), index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    status: Mapped[AuditStatus] = mapped_column(
        StatusType(AuditStatus), default=AuditStatus.PAYMENT_PENDING, index=True
    )
    # Unowned until a signed-in user claims it by email.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Unguessable token for public read-only report links.
    share_token: Mapped[str] = mapped_column(String, unique=True, default=_new_share_token)
    share_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    share_view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Report fields are populated only once the audit completes.
    overall_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    synthesis: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    token_usage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    warning_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    marketing_consent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Hashed caller fingerprint captured at checkout.
    created_ip: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    utm_source: Mapped[str | None] = mapped_column(String, nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(String, nullable=True)
    utm_campaign: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Soft delete marker; audits are never hard-deleted outside checkout rollback.
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    audit_id: Mapped[str] = mapped_column(String, ForeignKey("audits.id"), index=True)
    # Provider session id is the reconciliation key shared by webhook and poll paths.
    stripe_session_id: Mapped[str] = mapped_column(String, unique=True)
    stripe_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(8), default="usd")
    status: Mapped[PaymentStatus] = mapped_column(
        StatusType(PaymentStatus), default=PaymentStatus.PENDING, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditJob(Base):
    __tablename__ = "audit_jobs"
    __table_args__ = (
        # At most one pending/processing job per audit; concurrent enqueues collide here.
        Index(
            "uq_audit_jobs_active_audit",
            "audit_id",
            unique=True,
            postgresql_where=text(ACTIVE_JOB_PREDICATE),
            sqlite_where=text(ACTIVE_JOB_PREDICATE),
        ),
        Index("ix_audit_jobs_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    audit_id: Mapped[str] = mapped_column(String, ForeignKey("audits.id"), index=True)
    status: Mapped[JobStatus] = mapped_column(StatusType(JobStatus), default=JobStatus.PENDING)
    # Incremented on each successful claim; preserved across retries.
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # In-flight ownership marker; stale values are reclaimable.
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class RateLimitEvent(Base):
    __tablename__ = "rate_limit_events"
    __table_args__ = (Index("ix_rate_limit_events_lookup", "key", "type", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Hashed IP or lower-cased domain depending on type.
    key: Mapped[str] = mapped_column(String)
    type: Mapped[str] = mapped_column(String(16))
    # Limited events are kept for observability and do not consume budget.
    limited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, index=True)

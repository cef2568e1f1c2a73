"""audits, payments, audit jobs and rate-limit events

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

# Portable JSON column that uses JSONB on Postgres.
JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
ACTIVE_JOB_PREDICATE = "status IN ('pending', 'processing')"


def upgrade() -> None:
    op.create_table(
        "audits",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("domain", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        # Lower-case status literals; the application normalizes casing on write.
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("share_token", sa.String(), nullable=False),
        sa.Column("share_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("share_view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overall_score", sa.Float(), nullable=True),
        sa.Column("synthesis", JSON_TYPE, nullable=True),
        sa.Column("token_usage", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("warning_message", sa.Text(), nullable=True),
        sa.Column("marketing_consent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_ip", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("utm_source", sa.String(), nullable=True),
        sa.Column("utm_medium", sa.String(), nullable=True),
        sa.Column("utm_campaign", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("share_token", name="uq_audits_share_token"),
    )
    op.create_index("ix_audits_domain", "audits", ["domain"])
    op.create_index("ix_audits_email", "audits", ["email"])
    op.create_index("ix_audits_status", "audits", ["status"])
    op.create_index("ix_audits_user_id", "audits", ["user_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("audit_id", sa.String(), sa.ForeignKey("audits.id"), nullable=False),
        sa.Column("stripe_session_id", sa.String(), nullable=False),
        sa.Column("stripe_payment_id", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        # Reconciliation keys on the provider session; duplicates must collide.
        sa.UniqueConstraint("stripe_session_id", name="uq_payments_stripe_session_id"),
    )
    op.create_index("ix_payments_audit_id", "payments", ["audit_id"])
    op.create_index("ix_payments_status", "payments", ["status"])

    op.create_table(
        "audit_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("audit_id", sa.String(), sa.ForeignKey("audits.id"), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_jobs_audit_id", "audit_jobs", ["audit_id"])
    op.create_index("ix_audit_jobs_status_created", "audit_jobs", ["status", "created_at"])
    # At most one pending/processing job per audit.
    op.create_index(
        "uq_audit_jobs_active_audit",
        "audit_jobs",
        ["audit_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_JOB_PREDICATE),
        sqlite_where=sa.text(ACTIVE_JOB_PREDICATE),
    )

    op.create_table(
        "rate_limit_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("limited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_rate_limit_events_lookup", "rate_limit_events", ["key", "type", "created_at"])
    op.create_index("ix_rate_limit_events_created_at", "rate_limit_events", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_rate_limit_events_created_at", table_name="rate_limit_events")
    op.drop_index("ix_rate_limit_events_lookup", table_name="rate_limit_events")
    op.drop_table("rate_limit_events")

    op.drop_index("uq_audit_jobs_active_audit", table_name="audit_jobs")
    op.drop_index("ix_audit_jobs_status_created", table_name="audit_jobs")
    op.drop_index("ix_audit_jobs_audit_id", table_name="audit_jobs")
    op.drop_table("audit_jobs")

    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_index("ix_payments_audit_id", table_name="payments")
    op.drop_table("payments")

    op.drop_index("ix_audits_user_id", table_name="audits")
    op.drop_index("ix_audits_status", table_name="audits")
    op.drop_index("ix_audits_email", table_name="audits")
    op.drop_index("ix_audits_domain", table_name="audits")
    op.drop_table("audits")

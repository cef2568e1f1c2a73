"""normalize status casing

Revision ID: 0002_status_casing
Revises: 0001_init
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_status_casing"
down_revision = "0001_init"
branch_labels = None
depends_on = None

STATUS_TABLES = ("audits", "payments", "audit_jobs")
OLD_PREDICATE = "status IN ('pending', 'processing')"
NEW_PREDICATE = "lower(status) IN ('pending', 'processing')"


def _recreate_active_job_index(predicate: str) -> None:
    op.drop_index("uq_audit_jobs_active_audit", table_name="audit_jobs")
    op.create_index(
        "uq_audit_jobs_active_audit",
        "audit_jobs",
        ["audit_id"],
        unique=True,
        postgresql_where=sa.text(predicate),
        sqlite_where=sa.text(predicate),
    )


def upgrade() -> None:
    # Older writers stored upper-case literals; rewrite them to the canonical form.
    for table in STATUS_TABLES:
        op.execute(f"UPDATE {table} SET status = lower(status) WHERE status <> lower(status)")
    _recreate_active_job_index(NEW_PREDICATE)


def downgrade() -> None:
    _recreate_active_job_index(OLD_PREDICATE)

from __future__ import annotations

from enum import Enum


class _CaseInsensitiveEnum(str, Enum):
    # Stored values are lower case; upper-case literals from older writers map to the same member.
    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    def __str__(self) -> str:
        return self.value


class AuditStatus(_CaseInsensitiveEnum):
    PENDING = "pending"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_COMPLETE = "payment_complete"
    CRAWLING = "crawling"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentStatus(_CaseInsensitiveEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class JobStatus(_CaseInsensitiveEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_AUDIT_STATUSES = frozenset({AuditStatus.COMPLETED, AuditStatus.FAILED})
ACTIVE_JOB_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})
# Audits still waiting on payment; eligible for poll-time reconciliation.
AWAITING_PAYMENT_STATUSES = frozenset({AuditStatus.PENDING, AuditStatus.PAYMENT_PENDING})
# Paid audits that need a job to make progress.
PAID_IN_PROGRESS_STATUSES = frozenset(
    {AuditStatus.PAYMENT_COMPLETE, AuditStatus.CRAWLING, AuditStatus.ANALYZING}
)

_AUDIT_ORDER = (
    AuditStatus.PENDING,
    AuditStatus.PAYMENT_PENDING,
    AuditStatus.PAYMENT_COMPLETE,
    AuditStatus.CRAWLING,
    AuditStatus.ANALYZING,
    AuditStatus.COMPLETED,
)


def is_terminal(status: AuditStatus | str) -> bool:
    return AuditStatus(status) in TERMINAL_AUDIT_STATUSES


def is_forward_transition(current: AuditStatus | str, new: AuditStatus | str) -> bool:
    """Return True when moving from ``current`` to ``new`` follows the lifecycle graph.

    States only move forward along the pipeline, skipping is allowed, and
    ``failed`` is reachable from every non-terminal state. Nothing leaves a
    terminal state.
    """
    current_status = AuditStatus(current)
    new_status = AuditStatus(new)
    if is_terminal(current_status):
        return False
    if new_status is AuditStatus.FAILED:
        return True
    return _AUDIT_ORDER.index(new_status) > _AUDIT_ORDER.index(current_status)
